"""
backend/features/usage/service.py

Usage counters.

Each domain module (CRM, invoicing, ...) owns its usage data and registers a
synchronous accessor per countable feature. The entitlement layer only reads
through these accessors and never caches the result.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, Optional, Tuple

from backend.core.errors import ConfigurationError, UsageUnavailableError
from backend.features.plans.service import coerce_module, features_for, is_counted, limit_of
from backend.models.plan import ModuleId, PlanTier


logger = logging.getLogger("suite")

UsageAccessor = Callable[[str], int]

_counters: Dict[Tuple[ModuleId, str], UsageAccessor] = {}
_counters_lock = threading.Lock()


def register_usage_counter(module, feature: str, accessor: UsageAccessor) -> None:
    """
    Register the accessor reporting current usage of a quota feature.

    Args:
        module: Module owning the feature
        feature: Quota feature name from the plan catalog
        accessor: fn(org_id) -> current integer count

    Raises:
        ConfigurationError: if the feature is not a counted quota in the catalog
    """
    module_id = coerce_module(module)
    if not is_counted(module_id, feature):
        limit = limit_of(PlanTier.FREE, module_id, feature)
        kind = "per-item quota" if limit.kind == "quota" else f"{limit.kind} feature"
        raise ConfigurationError(f"{module_id.value}.{feature} is a {kind} and has no usage counter")
    with _counters_lock:
        _counters[(module_id, feature)] = accessor


def unregister_usage_counter(module, feature: str) -> None:
    module_id = coerce_module(module)
    with _counters_lock:
        _counters.pop((module_id, feature), None)


def clear_usage_counters() -> None:
    with _counters_lock:
        _counters.clear()


def get_usage(org_id: str, module, feature: str) -> int:
    """
    Ask the owning domain module for current usage.

    Raises:
        ConfigurationError: no accessor registered for the feature
        UsageUnavailableError: the accessor failed or returned garbage
    """
    module_id = coerce_module(module)
    accessor = _counters.get((module_id, feature))
    if accessor is None:
        raise ConfigurationError(f"No usage counter registered for {module_id.value}.{feature}")

    try:
        count = accessor(org_id)
    except Exception as e:
        logger.error(
            "[usage] counter failed",
            extra={"org_id": org_id, "module_id": module_id.value, "feature": feature, "error": str(e)},
        )
        raise UsageUnavailableError(
            f"Usage for {module_id.value}.{feature} is unavailable: {e}"
        ) from e

    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise UsageUnavailableError(
            f"Usage for {module_id.value}.{feature} returned an invalid count: {count!r}"
        )
    return count


def get_module_usage(org_id: str, module, features: Optional[Iterable[str]] = None) -> Dict[str, int]:
    """Usage for the given counted features of a module, all of them by default."""
    module_id = coerce_module(module)
    if features is None:
        features = [f for f in features_for(module_id) if is_counted(module_id, f)]
    return {feature: get_usage(org_id, module_id, feature) for feature in features}
