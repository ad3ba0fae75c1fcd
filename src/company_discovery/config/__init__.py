"""Configuration for the company discovery layer.

Usage:
    >>> from company_discovery.config import get_settings
    >>> settings = get_settings()
    >>> settings.quota_monthly_limit
    2000
"""

from company_discovery.config.flag_loader import load_default_flags
from company_discovery.config.settings import (
    FALLBACK_STRATEGY_NAMES,
    Settings,
    get_settings,
)

__all__ = [
    "FALLBACK_STRATEGY_NAMES",
    "Settings",
    "get_settings",
    "load_default_flags",
]
