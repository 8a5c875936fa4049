"""Rule set loading and versioned storage."""

from attain.plans.loader import load_rule_set, load_rule_set_file
from attain.plans.registry import RuleSetRegistry

__all__ = ["RuleSetRegistry", "load_rule_set", "load_rule_set_file"]
