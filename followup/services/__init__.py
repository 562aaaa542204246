"""
Service layer for the follow-up engine.

This package contains the logic for reading tenant records through field
mappings, evaluating rule conditions, recording deliveries and running
rules on a schedule.
"""

from .rule_runner import RuleRunner, get_rule_runner

__all__ = ["RuleRunner", "get_rule_runner"]
