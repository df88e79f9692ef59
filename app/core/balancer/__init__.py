from app.core.balancer.eligibility import account_ineligibility_reason, is_account_usable, is_api_key_valid
from app.core.balancer.health import (
    DEFAULT_DISABLE_SECONDS,
    HealthTracked,
    MappingHealth,
    apply_probe_result,
    is_mapping_available,
    mapping_ineligibility_reason,
    mark_healthy,
    mark_unhealthy,
    probe_passes,
    record_failure,
    record_success,
    reset_health,
    success_rate,
    weight_score,
)
from app.core.balancer.rules import can_access_account, can_access_platform, is_effective, matching_rules
from app.core.balancer.strategies import (
    MappingChoice,
    RoundRobinCursors,
    coerce_selection_strategy,
    select_account,
    select_mapping,
)

__all__ = [
    "DEFAULT_DISABLE_SECONDS",
    "HealthTracked",
    "MappingChoice",
    "MappingHealth",
    "RoundRobinCursors",
    "account_ineligibility_reason",
    "apply_probe_result",
    "can_access_account",
    "can_access_platform",
    "coerce_selection_strategy",
    "is_account_usable",
    "is_api_key_valid",
    "is_effective",
    "is_mapping_available",
    "mapping_ineligibility_reason",
    "mark_healthy",
    "mark_unhealthy",
    "matching_rules",
    "probe_passes",
    "record_failure",
    "record_success",
    "reset_health",
    "select_account",
    "select_mapping",
    "success_rate",
    "weight_score",
]
