"""
RuleEvaluator: interprets segment rule groups against a single donor.

Field paths support dotted traversal and bracket indexing
(``donations[0].amount``). A few computed fields are resolved before any
raw lookup. Unresolvable paths yield None, and every operator except the
null checks is then False.
"""

import re
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from donorseg.core.errors import EvaluationError
from donorseg.core.models import (
    Donor,
    LogicalOperator,
    Rule,
    RuleGroup,
    RuleOperator,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger()

_PATH_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")

ComputedField = Callable[[Donor, datetime], Any]

COMPUTED_FIELDS: dict[str, ComputedField] = {
    "total_donated": lambda donor, now: donor.total_donated,
    "donation_count": lambda donor, now: donor.donation_count,
    "avg_donation_amount": lambda donor, now: donor.average_donation,
    "days_since_last_donation": lambda donor, now: donor.days_since_last_donation(now),
    "days_since_first_donation": lambda donor, now: donor.days_since_first_donation(now),
}

_ORDERED = {
    RuleOperator.GREATER_THAN: lambda a, b: a > b,
    RuleOperator.LESS_THAN: lambda a, b: a < b,
    RuleOperator.GREATER_EQUAL: lambda a, b: a >= b,
    RuleOperator.LESS_EQUAL: lambda a, b: a <= b,
}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def parse_path(path: str) -> list[str | int]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    tokens: list[str | int] = []
    for index, name in _PATH_TOKEN.findall(path):
        tokens.append(int(index) if index else name)
    return tokens


def _step(obj: Any, token: str | int) -> Any:
    if obj is None:
        return None
    if isinstance(token, int):
        if isinstance(obj, Sequence) and not isinstance(obj, str) and token < len(obj):
            return obj[token]
        return None
    if isinstance(obj, Mapping):
        return obj.get(token)
    if token.startswith("_"):
        return None
    if isinstance(obj, BaseModel):
        value = getattr(obj, token, None)
        if value is None and obj.model_extra:
            value = obj.model_extra.get(token)
        return None if callable(value) else value
    return None


def _to_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise EvaluationError(f"Not a number: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise EvaluationError(f"Not a number: {value!r}") from exc


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError as exc:
            raise EvaluationError(f"Not an ISO-8601 datetime: {value!r}") from exc
    raise EvaluationError(f"Not a datetime: {value!r}")


def _comparable(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Coerce a pair for ordered comparison."""
    if isinstance(actual, datetime):
        return ensure_utc(actual), _to_datetime(expected)
    return _to_float(actual), _to_float(expected)


def _equal(actual: Any, expected: Any) -> bool:
    actual, expected = _plain(actual), _plain(expected)
    if isinstance(actual, datetime) or isinstance(expected, datetime):
        try:
            return _to_datetime(actual) == _to_datetime(expected)
        except EvaluationError:
            return False
    numeric = (int, float)
    if isinstance(actual, numeric) and not isinstance(actual, bool) and isinstance(expected, str):
        try:
            return float(actual) == float(expected)
        except ValueError:
            return False
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    needle = str(_plain(expected)).lower()
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(needle in str(_plain(item)).lower() for item in actual)
    return needle in str(_plain(actual)).lower()


def _member_of(actual: Any, collection: Any) -> bool:
    return any(_equal(actual, candidate) for candidate in collection)


class RuleEvaluator:
    """
    Evaluates flat AND/OR rule groups against donors.

    Evaluation is a pure function of the donor, the rules and the reference
    time. The reference time comes from the ``now`` argument, else from the
    clock given at construction.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._log = logger.bind(component="rule_evaluator")

    def resolve_field(self, donor: Donor, path: str, now: datetime | None = None) -> Any:
        """Resolve a field path on a donor, returning None when unresolvable."""
        computed = COMPUTED_FIELDS.get(path)
        if computed is not None:
            return computed(donor, now or self._clock())

        value: Any = donor
        for token in parse_path(path):
            value = _step(value, token)
            if value is None:
                return None
        return _plain(value)

    def evaluate_rule(self, donor: Donor, rule: Rule, now: datetime | None = None) -> bool:
        actual = self.resolve_field(donor, rule.field, now)
        try:
            return self._apply(rule.operator, actual, rule.value)
        except EvaluationError as exc:
            self._log.debug(
                "rule_evaluation_failed",
                donor_id=donor.id,
                rule_id=rule.id,
                field=rule.field,
                error=str(exc),
            )
            return False

    def evaluate(self, donor: Donor, rule_group: RuleGroup, now: datetime | None = None) -> bool:
        """Evaluate a rule group. An empty group is no constraint."""
        if not rule_group.rules:
            return True

        now = now or self._clock()
        results = (self.evaluate_rule(donor, rule, now) for rule in rule_group.rules)
        if rule_group.logical_operator == LogicalOperator.OR:
            return any(results)
        return all(results)

    def qualifies(
        self,
        donor: Donor,
        include: RuleGroup,
        exclude: RuleGroup | None = None,
        now: datetime | None = None,
    ) -> bool:
        """``evaluate(include) and not evaluate(exclude)``."""
        now = now or self._clock()
        if not self.evaluate(donor, include, now):
            return False
        if exclude is not None and exclude.rules and self.evaluate(donor, exclude, now):
            return False
        return True

    def _apply(self, operator: RuleOperator, actual: Any, expected: Any) -> bool:
        if operator == RuleOperator.IS_NULL:
            return actual is None
        if operator == RuleOperator.IS_NOT_NULL:
            return actual is not None
        if actual is None:
            return False

        if operator == RuleOperator.EQUALS:
            return _equal(actual, expected)
        if operator == RuleOperator.NOT_EQUALS:
            return not _equal(actual, expected)
        if operator in _ORDERED:
            a, b = _comparable(actual, expected)
            return _ORDERED[operator](a, b)
        if operator == RuleOperator.CONTAINS:
            return _contains(actual, expected)
        if operator == RuleOperator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if operator == RuleOperator.IN:
            return _member_of(actual, expected)
        if operator == RuleOperator.NOT_IN:
            return not _member_of(actual, expected)
        if operator == RuleOperator.BETWEEN:
            low, high = expected
            a, lo = _comparable(actual, low)
            _, hi = _comparable(actual, high)
            return lo <= a <= hi

        raise EvaluationError(f"Unsupported operator: {operator}")
