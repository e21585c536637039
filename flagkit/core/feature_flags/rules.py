"""Targeting rule evaluation.

Rules never raise to the caller. A missing attribute makes a rule false, and a
malformed rule (unknown operator, wrong value shape, bad regex, unparseable
date or version bound) is logged as a configuration error and also evaluates
false.
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Callable, Iterable, List, Optional, Pattern

from packaging.version import InvalidVersion, Version

from flagkit.core.errors import ConfigurationError, ErrorCode
from flagkit.core.feature_flags.models import (
    EvaluationContext,
    FlagDefinition,
    MatchMode,
    Operator,
    Segment,
    TargetingRule,
)
from flagkit.utils.metrics import flag_configuration_errors_total

logger = logging.getLogger(__name__)

SUBJECT_ATTRIBUTE = "subjectId"

_MISSING = object()

_COLLECTION_TYPES = (list, tuple, set, frozenset)


@functools.lru_cache(maxsize=256)
def _compile(pattern: str, case_sensitive: bool) -> Pattern[str]:
    return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _fold(value: str, case_sensitive: bool) -> str:
    return value if case_sensitive else value.casefold()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Read a datetime, ISO-8601 string or epoch seconds; None if unparseable.

    Naive values are taken as UTC so they compare with aware ones.
    """
    if isinstance(value, datetime):
        parsed = value
    elif _is_number(value):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_version(value: Any) -> Optional[Version]:
    """Parse a version string (a leading ``v`` is allowed); None if invalid."""
    if not isinstance(value, str):
        return None
    try:
        return Version(value.strip())
    except InvalidVersion:
        return None


def resolve_attribute(context: EvaluationContext, path: str) -> Any:
    """Look up ``path`` in the context; returns ``_MISSING`` when absent."""
    if path == SUBJECT_ATTRIBUTE:
        return context.subject_id if context.subject_id is not None else _MISSING

    attributes = context.attributes
    if path in attributes:
        return attributes[path]

    current: Any = attributes
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


class RuleEvaluator:
    """Evaluates targeting rules, rule sets and segments against a context."""

    def evaluate_rule(self, rule: TargetingRule, context: EvaluationContext) -> bool:
        """Evaluate a single rule. Never raises."""
        try:
            return self._evaluate_rule(rule, context)
        except ConfigurationError as e:
            logger.warning(
                f"Invalid targeting rule on attribute '{rule.attribute}': {e}",
                extra={"error_code": e.code.value, "operator": str(rule.operator)},
            )
            flag_configuration_errors_total.labels(kind=e.code.value.lower()).inc()
            return False

    def evaluate_rule_set(
        self,
        rules: Iterable[TargetingRule],
        match_mode: MatchMode,
        context: EvaluationContext,
    ) -> bool:
        """Combine rules with AND (``all``) or OR (``any``)."""
        return self._combine(
            [functools.partial(self.evaluate_rule, rule, context) for rule in rules],
            match_mode,
        )

    def evaluate_segment(self, segment: Segment, context: EvaluationContext) -> bool:
        """Check segment membership.

        Explicit exclusion wins over inclusion; otherwise an included subject
        matches without consulting the rules. A segment with no rules only
        matches its included subjects.
        """
        subject = context.subject_id
        if subject is not None:
            if subject in segment.excluded:
                return False
            if subject in segment.included:
                return True
        if not segment.rules:
            return False
        return self.evaluate_rule_set(segment.rules, segment.match_mode, context)

    def evaluate_targeting(
        self,
        flag: FlagDefinition,
        context: EvaluationContext,
        segments: Mapping[str, Segment],
    ) -> bool:
        """Evaluate a flag's rules and segment references as one rule set.

        Each referenced segment is expanded in place into a single term that
        is combined with the flag's own rules under the flag's match mode.
        An unknown segment name makes the whole rule set false.
        """
        terms: List[Callable[[], bool]] = [
            functools.partial(self.evaluate_rule, rule, context) for rule in flag.targeting
        ]
        for name in flag.segments:
            segment = segments.get(name)
            if segment is None:
                error = ConfigurationError(
                    f"flag '{flag.key}' references unknown segment '{name}'",
                    code=ErrorCode.UNKNOWN_SEGMENT,
                    flag_key=flag.key,
                )
                logger.error(
                    str(error),
                    extra={"flag_key": flag.key, "segment": name, "error_code": error.code.value},
                )
                flag_configuration_errors_total.labels(kind="unknown_segment").inc()
                return False
            terms.append(functools.partial(self.evaluate_segment, segment, context))

        return self._combine(terms, flag.match_mode)

    @staticmethod
    def _combine(terms: List[Callable[[], bool]], match_mode: MatchMode) -> bool:
        mode = MatchMode(match_mode)
        if mode == MatchMode.ALL:
            return all(term() for term in terms)
        return any(term() for term in terms)

    def _evaluate_rule(self, rule: TargetingRule, context: EvaluationContext) -> bool:
        try:
            operator = Operator(rule.operator)
        except ValueError:
            raise ConfigurationError(
                f"unknown operator '{rule.operator}'",
                code=ErrorCode.UNKNOWN_OPERATOR,
            ) from None

        actual = resolve_attribute(context, rule.attribute)

        if operator == Operator.EXISTS:
            return (actual is not _MISSING and actual is not None) != rule.negate
        if operator == Operator.NOT_EXISTS:
            return (actual is _MISSING or actual is None) != rule.negate

        if actual is _MISSING:
            return False

        matched = self._compare(operator, actual, rule.value, rule.case_sensitive)
        return not matched if rule.negate else matched

    def _compare(
        self, operator: Operator, actual: Any, expected: Any, case_sensitive: bool
    ) -> bool:
        if operator == Operator.EQUALS:
            return self._equals(actual, expected, case_sensitive)
        elif operator == Operator.NOT_EQUALS:
            return not self._equals(actual, expected, case_sensitive)
        elif operator == Operator.IN:
            return self._is_in(actual, expected, case_sensitive)
        elif operator == Operator.NOT_IN:
            return not self._is_in(actual, expected, case_sensitive)
        elif operator in (
            Operator.GREATER_THAN,
            Operator.GREATER_THAN_OR_EQUALS,
            Operator.LESS_THAN,
            Operator.LESS_THAN_OR_EQUALS,
        ):
            return self._order(operator, actual, expected)
        elif operator in (
            Operator.STARTS_WITH,
            Operator.ENDS_WITH,
            Operator.CONTAINS,
            Operator.NOT_CONTAINS,
        ):
            return self._string_op(operator, actual, expected, case_sensitive)
        elif operator == Operator.MATCHES:
            return self._matches(actual, expected, case_sensitive)
        elif operator in (Operator.BEFORE, Operator.AFTER):
            return self._dates(operator, actual, expected)
        elif operator in (
            Operator.SEMVER_GREATER_THAN,
            Operator.SEMVER_LESS_THAN,
            Operator.SEMVER_EQUALS,
        ):
            return self._semver(operator, actual, expected)
        raise ConfigurationError(
            f"unsupported operator '{operator.value}'", code=ErrorCode.UNKNOWN_OPERATOR
        )

    @staticmethod
    def _equals(actual: Any, expected: Any, case_sensitive: bool) -> bool:
        # no coercion between bools and numbers
        if isinstance(actual, bool) != isinstance(expected, bool):
            return False
        if isinstance(actual, str) and isinstance(expected, str):
            return _fold(actual, case_sensitive) == _fold(expected, case_sensitive)
        if type(actual) is not type(expected) and not (
            _is_number(actual) and _is_number(expected)
        ):
            return False
        return actual == expected

    def _is_in(self, actual: Any, expected: Any, case_sensitive: bool) -> bool:
        if not isinstance(expected, _COLLECTION_TYPES):
            raise ConfigurationError(
                f"'in'/'notIn' expects a collection value, got {type(expected).__name__}",
                code=ErrorCode.INVALID_RULE_VALUE,
            )
        return any(self._equals(actual, item, case_sensitive) for item in expected)

    @staticmethod
    def _order(operator: Operator, actual: Any, expected: Any) -> bool:
        comparable = (_is_number(actual) and _is_number(expected)) or (
            isinstance(actual, str) and isinstance(expected, str)
        )
        if not comparable:
            return False
        if operator == Operator.GREATER_THAN:
            return actual > expected
        elif operator == Operator.GREATER_THAN_OR_EQUALS:
            return actual >= expected
        elif operator == Operator.LESS_THAN:
            return actual < expected
        return actual <= expected

    @staticmethod
    def _string_op(
        operator: Operator, actual: Any, expected: Any, case_sensitive: bool
    ) -> bool:
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        actual = _fold(actual, case_sensitive)
        expected = _fold(expected, case_sensitive)
        if operator == Operator.STARTS_WITH:
            return actual.startswith(expected)
        elif operator == Operator.ENDS_WITH:
            return actual.endswith(expected)
        elif operator == Operator.CONTAINS:
            return expected in actual
        return expected not in actual

    @staticmethod
    def _matches(actual: Any, expected: Any, case_sensitive: bool) -> bool:
        if not isinstance(expected, str):
            raise ConfigurationError(
                "'matches' expects a regular expression string",
                code=ErrorCode.INVALID_RULE_VALUE,
            )
        try:
            pattern = _compile(expected, case_sensitive)
        except re.error as e:
            raise ConfigurationError(
                f"invalid regular expression '{expected}': {e}",
                code=ErrorCode.INVALID_RULE_VALUE,
            ) from e
        if not isinstance(actual, str):
            return False
        return pattern.search(actual) is not None

    @staticmethod
    def _dates(operator: Operator, actual: Any, expected: Any) -> bool:
        boundary = parse_datetime(expected)
        if boundary is None:
            raise ConfigurationError(
                f"'{operator.value}' expects a date, got {expected!r}",
                code=ErrorCode.INVALID_RULE_VALUE,
            )
        moment = parse_datetime(actual)
        if moment is None:
            return False
        if operator == Operator.BEFORE:
            return moment < boundary
        return moment > boundary

    @staticmethod
    def _semver(operator: Operator, actual: Any, expected: Any) -> bool:
        target = parse_version(expected)
        if target is None:
            raise ConfigurationError(
                f"'{operator.value}' expects a version string, got {expected!r}",
                code=ErrorCode.INVALID_RULE_VALUE,
            )
        version = parse_version(actual)
        if version is None:
            return False
        if operator == Operator.SEMVER_GREATER_THAN:
            return version > target
        elif operator == Operator.SEMVER_LESS_THAN:
            return version < target
        return version == target


_default_evaluator = RuleEvaluator()


def evaluate_rule(rule: TargetingRule, context: EvaluationContext) -> bool:
    """Evaluate a single rule with the shared evaluator."""
    return _default_evaluator.evaluate_rule(rule, context)


def evaluate_rule_set(
    rules: Iterable[TargetingRule],
    match_mode: MatchMode,
    context: EvaluationContext,
) -> bool:
    """Evaluate a rule set with the shared evaluator."""
    return _default_evaluator.evaluate_rule_set(rules, match_mode, context)


__all__ = [
    "SUBJECT_ATTRIBUTE",
    "RuleEvaluator",
    "evaluate_rule",
    "evaluate_rule_set",
    "parse_datetime",
    "parse_version",
    "resolve_attribute",
]
