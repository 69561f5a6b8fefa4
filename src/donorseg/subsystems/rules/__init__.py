"""Rule evaluation."""

from donorseg.subsystems.rules.rule_evaluator import RuleEvaluator, parse_path

__all__ = ["RuleEvaluator", "parse_path"]
