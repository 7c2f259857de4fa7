from .policy_rules import (
    PolicyRuleNormalizationOptions,
    build_normalized_policy_rules_map,
    normalize_policy_rules,
)
from .roles import RolesDatabase

__all__ = [
    "PolicyRuleNormalizationOptions",
    "RolesDatabase",
    "build_normalized_policy_rules_map",
    "normalize_policy_rules",
]
