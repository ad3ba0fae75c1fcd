"""
YAML loader for the default feature flag catalogue.

The catalogue is a mapping of flag key to flag attributes (see
``feature_flags.yml`` beside this module). The
``feature_flags_file`` setting overrides the bundled file.
"""

from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from pydantic import ValidationError

from company_discovery.domain.discovery.models import FeatureFlag

logger = structlog.get_logger(__name__)

DEFAULT_FLAGS_FILE = Path(__file__).resolve().parent / "feature_flags.yml"


def load_default_flags(file_path: Optional[Path] = None) -> List[FeatureFlag]:
    """
    Load the default feature flags.

    Behavior:
    - Missing file: returns an empty list, logs a warning
    - Empty file: returns an empty list
    - Invalid YAML or invalid flag definition: raises ValueError naming the file

    Args:
        file_path: Optional catalogue path; defaults to the bundled file.

    Returns:
        Flags in file order, each at version 1.
    """
    if file_path is None:
        file_path = DEFAULT_FLAGS_FILE

    if not file_path.exists():
        logger.warning("flag_loader.file_not_found", file_path=str(file_path))
        return []

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("flag_loader.yaml_parse_error", file_path=str(file_path), error=str(e))
        raise ValueError(f"Invalid YAML in {file_path}: {e}") from e

    if content is None:
        return []

    if not isinstance(content, dict):
        raise ValueError(
            f"Invalid flag catalogue in {file_path}: "
            f"expected mapping, got {type(content).__name__}"
        )

    flags: List[FeatureFlag] = []
    for key, attributes in content.items():
        try:
            flags.append(FeatureFlag(key=str(key), **(attributes or {})))
        except (TypeError, ValidationError) as e:
            logger.error("flag_loader.invalid_flag", file_path=str(file_path), flag_key=key)
            raise ValueError(f"Invalid flag '{key}' in {file_path}: {e}") from e

    logger.debug("flag_loader.file_loaded", file_path=str(file_path), flag_count=len(flags))
    return flags
