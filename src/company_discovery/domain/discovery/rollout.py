"""
Deterministic feature-flag evaluation.

Evaluation order for a flag:
1. unknown flag              -> disabled ("flag not found")
2. ``enabled`` is False      -> disabled ("flag disabled")
3. any condition fails       -> disabled ("conditions not met")
4. rollout below 100 percent -> enabled iff bucket(identity) < percentage
5. otherwise                 -> enabled ("fully enabled")

``bucket`` is a SHA-1 of the identity (user id, else session id, else
"anonymous") modulo 100. It does not depend on the flag or the percentage,
so raising a percentage only ever adds identities.
"""

import hashlib
import json
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from company_discovery.domain.discovery.models import (
    ConditionOperator,
    FeatureFlag,
    FlagCondition,
    FlagEvaluation,
    IdentityContext,
)
from company_discovery.domain.discovery.protocols import DurableStore
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

FLAGS_STATE_KEY = "flags:catalogue"
DISCOVERY_FLAG = "company_discovery"

REASON_NOT_FOUND = "flag not found"
REASON_DISABLED = "flag disabled"
REASON_CONDITIONS = "conditions not met"
REASON_FULL = "fully enabled"


def rollout_bucket(identity: str) -> int:
    """
    Stable bucket in 0..99 for an identity string.

    Examples:
        >>> rollout_bucket("user-42") == rollout_bucket("user-42")
        True
    """
    digest = hashlib.sha1(identity.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def _attribute_value(
    condition: FlagCondition, identity: IdentityContext, now: datetime
) -> Any:
    if condition.attribute == "user_id":
        return identity.user_id
    if condition.attribute == "email_domain":
        return identity.email_domain
    if condition.attribute == "session_age":
        if identity.session_started_at is None:
            return None
        return (now - identity.session_started_at).total_seconds()
    if condition.attribute == "client_type":
        return identity.client_type
    return identity.custom.get(condition.key)


def evaluate_condition(
    condition: FlagCondition, identity: IdentityContext, now: datetime
) -> bool:
    """Apply one condition; a missing attribute never matches."""
    actual = _attribute_value(condition, identity, now)
    if actual is None:
        return False
    expected = condition.value
    op = condition.operator

    if op is ConditionOperator.EQUALS:
        return actual == expected
    if op is ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if op is ConditionOperator.GREATER_THAN else left < right

    actual_text, expected_text = str(actual), str(expected)
    if op is ConditionOperator.CONTAINS:
        return expected_text in actual_text
    if op is ConditionOperator.STARTS_WITH:
        return actual_text.startswith(expected_text)
    if op is ConditionOperator.ENDS_WITH:
        return actual_text.endswith(expected_text)
    return False


class RolloutGate:
    """
    Feature flag catalogue with cached, deterministic evaluation.

    Examples:
        >>> gate = RolloutGate(clock, flags=load_default_flags())
        >>> gate.is_enabled("company_discovery", IdentityContext(user_id="u1")).enabled
        True
    """

    def __init__(
        self,
        clock: Clock,
        flags: Optional[Iterable[FeatureFlag]] = None,
        store: Optional[DurableStore] = None,
        cache_ttl_seconds: int = 300,
        max_cached_evaluations: int = 10000,
    ):
        self.clock = clock
        self.store = store
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self.max_cached_evaluations = max_cached_evaluations
        self._flags: Dict[str, FeatureFlag] = {}
        self._cache: "OrderedDict[Tuple[str, str], Tuple[FlagEvaluation, datetime]]" = OrderedDict()
        self._default_identity = IdentityContext()
        for flag in flags or []:
            self._flags[flag.key] = flag.model_copy(
                update={"updated_at": flag.updated_at or clock.now()}
            )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def set_default_identity(self, identity: IdentityContext) -> None:
        """Identity used when ``is_enabled`` is called without one."""
        self._default_identity = identity
        self._cache.clear()

    def is_enabled(
        self, flag_key: str, identity: Optional[IdentityContext] = None
    ) -> FlagEvaluation:
        identity = identity or self._default_identity
        now = self.clock.now()
        cache_key = (flag_key, identity.snapshot())
        cached = self._cache.get(cache_key)
        if cached is not None and now - cached[1] < self.cache_ttl:
            return cached[0]

        result = self._evaluate(flag_key, identity, now)
        self._remember(cache_key, result, now)
        return result

    def _remember(self, cache_key: Tuple[str, str], result: FlagEvaluation, now: datetime) -> None:
        """Store an evaluation; entries are kept oldest first, so expiry trims the front."""
        self._cache[cache_key] = (result, now)
        self._cache.move_to_end(cache_key)
        while self._cache:
            oldest_key, (_, evaluated_at) = next(iter(self._cache.items()))
            if now - evaluated_at < self.cache_ttl and len(self._cache) <= self.max_cached_evaluations:
                break
            del self._cache[oldest_key]

    def _evaluate(self, flag_key: str, identity: IdentityContext, now: datetime) -> FlagEvaluation:
        flag = self._flags.get(flag_key)
        if flag is None:
            return FlagEvaluation(flag_key=flag_key, enabled=False, reason=REASON_NOT_FOUND)

        def result(enabled: bool, reason: str) -> FlagEvaluation:
            return FlagEvaluation(
                flag_key=flag_key,
                enabled=enabled,
                reason=reason,
                variant=flag.variant if enabled else None,
                version=flag.version,
            )

        if not flag.enabled:
            return result(False, REASON_DISABLED)

        if flag.conditions and not all(
            evaluate_condition(c, identity, now) for c in flag.conditions
        ):
            return result(False, REASON_CONDITIONS)

        if flag.rollout_percentage < 100:
            bucket = rollout_bucket(identity.bucket_identity)
            return result(
                bucket < flag.rollout_percentage,
                f"rollout: {flag.rollout_percentage}% (identity in bucket {bucket})",
            )

        return result(True, REASON_FULL)

    def evaluate_all(self, identity: Optional[IdentityContext] = None) -> Dict[str, FlagEvaluation]:
        return {key: self.is_enabled(key, identity) for key in sorted(self._flags)}

    # ------------------------------------------------------------------
    # Catalogue management
    # ------------------------------------------------------------------

    def get_flag(self, flag_key: str) -> Optional[FeatureFlag]:
        flag = self._flags.get(flag_key)
        return flag.model_copy() if flag else None

    def all_flags(self) -> List[FeatureFlag]:
        return [self._flags[key].model_copy() for key in sorted(self._flags)]

    def add_flag(self, flag: FeatureFlag) -> None:
        """Add or replace a flag; a replacement gets the next version."""
        existing = self._flags.get(flag.key)
        version = max(flag.version, existing.version + 1) if existing else flag.version
        self._flags[flag.key] = flag.model_copy(
            update={"version": version, "updated_at": self.clock.now()}
        )
        self._cache.clear()

    def update_flag(self, flag_key: str, **changes: Any) -> FeatureFlag:
        """
        Apply ``changes`` to a flag and bump its version.

        Raises:
            KeyError: the flag does not exist
            ValueError: the changes do not validate
        """
        existing = self._flags.get(flag_key)
        if existing is None:
            raise KeyError(flag_key)
        changes.pop("key", None)
        data = existing.model_dump()
        data.update(changes)
        data["version"] = existing.version + 1
        data["updated_at"] = self.clock.now()
        updated = FeatureFlag.model_validate(data)
        self._flags[flag_key] = updated
        self._cache.clear()
        logger.info(
            "rollout.flag_updated",
            flag_key=flag_key,
            version=updated.version,
            changed=sorted(changes),
        )
        return updated.model_copy()

    def remove_flag(self, flag_key: str) -> bool:
        removed = self._flags.pop(flag_key, None) is not None
        if removed:
            self._cache.clear()
        return removed

    def export_flags(self) -> str:
        return json.dumps(
            [flag.model_dump(mode="json") for flag in self.all_flags()], indent=2, sort_keys=True
        )

    def import_flags(self, payload: str) -> int:
        """Merge flags from ``export_flags`` output; newer versions win."""
        return self._merge(FeatureFlag.model_validate(raw) for raw in json.loads(payload))

    def _merge(self, flags: Iterable[FeatureFlag]) -> int:
        merged = 0
        for flag in flags:
            current = self._flags.get(flag.key)
            if current is None or flag.version > current.version:
                self._flags[flag.key] = flag
                merged += 1
        if merged:
            self._cache.clear()
        return merged

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> bool:
        if self.store is None:
            return False
        payload = {key: flag.model_dump(mode="json") for key, flag in self._flags.items()}
        try:
            await self.store.set(FLAGS_STATE_KEY, payload)
        except Exception as e:
            logger.warning("rollout.persist_failed", error=str(e))
            return False
        return True

    async def load(self) -> int:
        """Merge stored flags; returns how many overrode the in-memory catalogue."""
        if self.store is None:
            return 0
        try:
            payload = await self.store.get(FLAGS_STATE_KEY)
        except Exception as e:
            logger.warning("rollout.load_failed", error=str(e))
            return 0
        if not payload:
            return 0
        flags = []
        for key, raw in payload.items():
            try:
                flags.append(FeatureFlag.model_validate(raw))
            except ValueError as e:
                logger.warning("rollout.stored_flag_invalid", flag_key=key, error=str(e))
        merged = self._merge(flags)
        logger.info("rollout.loaded", merged=merged)
        return merged
