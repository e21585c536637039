"""Static checks for a configuration snapshot.

Evaluation tolerates every problem reported here by degrading the affected
rule or flag; these checks let providers surface them before a snapshot goes
live.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from flagkit.core.errors import ErrorCode
from flagkit.core.feature_flags.dependencies import DependencyResolver
from flagkit.core.feature_flags.models import ConfigSnapshot, Operator, TargetingRule
from flagkit.core.feature_flags.rules import parse_datetime, parse_version

logger = logging.getLogger(__name__)

_COLLECTION_OPERATORS = (Operator.IN, Operator.NOT_IN)
_DATE_OPERATORS = (Operator.BEFORE, Operator.AFTER)
_SEMVER_OPERATORS = (
    Operator.SEMVER_GREATER_THAN,
    Operator.SEMVER_LESS_THAN,
    Operator.SEMVER_EQUALS,
)


@dataclass(frozen=True)
class ValidationIssue:
    code: ErrorCode
    message: str
    flag_key: Optional[str] = None
    segment: Optional[str] = None
    severity: str = "error"  # error | warning


def _rule_issues(rule: TargetingRule, owner: str) -> List[str]:
    problems = []
    try:
        operator = Operator(rule.operator)
    except ValueError:
        return [f"{owner}: unknown operator '{rule.operator}'"]
    if operator in _COLLECTION_OPERATORS and not isinstance(
        rule.value, (list, tuple, set, frozenset)
    ):
        problems.append(f"{owner}: '{operator.value}' on '{rule.attribute}' needs a list value")
    if operator == Operator.MATCHES and not isinstance(rule.value, str):
        problems.append(f"{owner}: 'matches' on '{rule.attribute}' needs a pattern string")
    if operator in _DATE_OPERATORS and parse_datetime(rule.value) is None:
        problems.append(f"{owner}: '{operator.value}' on '{rule.attribute}' needs a date value")
    if operator in _SEMVER_OPERATORS and parse_version(rule.value) is None:
        problems.append(f"{owner}: '{operator.value}' on '{rule.attribute}' needs a version string")
    return problems


def validate_snapshot(snapshot: ConfigSnapshot) -> List[ValidationIssue]:
    """Check a snapshot for configuration problems without raising."""
    issues: List[ValidationIssue] = []

    for name, segment in snapshot.segments.items():
        for rule in segment.rules:
            for problem in _rule_issues(rule, f"segment '{name}'"):
                issues.append(
                    ValidationIssue(ErrorCode.INVALID_RULE_VALUE, problem, segment=name)
                )

    for key, flag in snapshot.flags.items():
        for rule in flag.targeting:
            for problem in _rule_issues(rule, f"flag '{key}'"):
                issues.append(ValidationIssue(ErrorCode.INVALID_RULE_VALUE, problem, flag_key=key))

        for name in flag.segments:
            if name not in snapshot.segments:
                issues.append(
                    ValidationIssue(
                        ErrorCode.UNKNOWN_SEGMENT,
                        f"flag '{key}' references unknown segment '{name}'",
                        flag_key=key,
                        segment=name,
                    )
                )

        for other in flag.prerequisites:
            if other not in snapshot:
                issues.append(
                    ValidationIssue(
                        ErrorCode.CONFIGURATION_ERROR,
                        f"flag '{key}' requires unknown flag '{other}'",
                        flag_key=key,
                    )
                )

        for other, variant in flag.required_variants.items():
            prerequisite = snapshot.get_flag(other)
            if other not in flag.prerequisites:
                issues.append(
                    ValidationIssue(
                        ErrorCode.CONFIGURATION_ERROR,
                        f"flag '{key}' requires variant '{variant}' of '{other}', which is not a prerequisite",
                        flag_key=key,
                    )
                )
            elif prerequisite is not None and variant not in {v.name for v in prerequisite.variants}:
                issues.append(
                    ValidationIssue(
                        ErrorCode.CONFIGURATION_ERROR,
                        f"flag '{key}' requires unknown variant '{variant}' of '{other}'",
                        flag_key=key,
                    )
                )

        for other in flag.mutex:
            if other not in snapshot:
                issues.append(
                    ValidationIssue(
                        ErrorCode.CONFIGURATION_ERROR,
                        f"flag '{key}' lists unknown mutex member '{other}'",
                        flag_key=key,
                        severity="warning",
                    )
                )

        if flag.percentage is not None and not 0 <= flag.percentage <= 100:
            issues.append(
                ValidationIssue(
                    ErrorCode.CONFIGURATION_ERROR,
                    f"flag '{key}' percentage {flag.percentage} is outside 0-100",
                    flag_key=key,
                )
            )

        if flag.variants:
            weights = [variant.weight for variant in flag.variants]
            total = sum(weights)
            if any(weight < 0 for weight in weights) or total <= 0:
                issues.append(
                    ValidationIssue(
                        ErrorCode.INVALID_WEIGHTS,
                        f"flag '{key}' variant weights cannot form ranges",
                        flag_key=key,
                    )
                )
            elif total != 100:
                issues.append(
                    ValidationIssue(
                        ErrorCode.INVALID_WEIGHTS,
                        f"flag '{key}' variant weights sum to {total}, will be normalized",
                        flag_key=key,
                        severity="warning",
                    )
                )
            names = [variant.name for variant in flag.variants]
            if len(set(names)) != len(names):
                issues.append(
                    ValidationIssue(
                        ErrorCode.CONFIGURATION_ERROR,
                        f"flag '{key}' has duplicate variant names",
                        flag_key=key,
                    )
                )

    for cycle in DependencyResolver.find_cycles(snapshot):
        issues.append(
            ValidationIssue(
                ErrorCode.CYCLE_DETECTED,
                f"prerequisite cycle: {' -> '.join(cycle)}",
                flag_key=cycle[0],
            )
        )

    for issue in issues:
        log = logger.warning if issue.severity == "warning" else logger.error
        log(issue.message, extra={"error_code": issue.code.value})

    return issues


__all__ = ["ValidationIssue", "validate_snapshot"]
