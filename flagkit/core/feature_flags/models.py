"""Feature flag data model.

Every type here is immutable. A ``ConfigSnapshot`` is replaced wholesale when
configuration changes, never edited in place, so concurrent readers always
see one complete version.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, FrozenSet, Iterator, Mapping, Optional, Tuple


class MatchMode(str, Enum):
    """How a rule set combines its rules."""

    ALL = "all"  # every rule must match
    ANY = "any"  # at least one rule must match


class Operator(str, Enum):
    """Targeting rule operators."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    IN = "in"
    NOT_IN = "notIn"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUALS = "greaterThanOrEquals"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUALS = "lessThanOrEquals"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    MATCHES = "matches"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"
    BEFORE = "before"
    AFTER = "after"
    SEMVER_GREATER_THAN = "semverGreaterThan"
    SEMVER_LESS_THAN = "semverLessThan"
    SEMVER_EQUALS = "semverEquals"


class Reason(str, Enum):
    """Why an evaluation produced its result."""

    DISABLED = "disabled"
    PREREQUISITE_FAILED = "prerequisite-failed"
    MUTEX_LOST = "mutex-lost"
    TARGETING_MISMATCH = "targeting-mismatch"
    BUCKETED_IN = "bucketed-in"
    BUCKETED_OUT = "bucketed-out"
    VARIANT_ASSIGNED = "variant-assigned"
    DEFAULT = "default"


def _freeze_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if value is None:
        return MappingProxyType({})
    if isinstance(value, MappingProxyType):
        return value
    return MappingProxyType(dict(value))


@dataclass(frozen=True)
class Variant:
    """One weighted outcome of a multi-variant flag."""

    name: str
    weight: float = 0
    payload: Any = None


@dataclass(frozen=True)
class TargetingRule:
    """Single attribute condition.

    ``attribute`` may be a dot path into nested attribute mappings
    (``"account.plan"``). ``subjectId`` resolves to the context subject.
    """

    attribute: str
    operator: Operator
    value: Any = None
    negate: bool = False
    case_sensitive: bool = True


@dataclass(frozen=True)
class Segment:
    """Named, reusable rule set."""

    name: str
    rules: Tuple[TargetingRule, ...] = ()
    match_mode: MatchMode = MatchMode.ALL
    included: FrozenSet[str] = frozenset()
    excluded: FrozenSet[str] = frozenset()
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "included", frozenset(self.included))
        object.__setattr__(self, "excluded", frozenset(self.excluded))


@dataclass(frozen=True)
class FlagDefinition:
    """Feature flag definition."""

    key: str
    enabled: bool = False
    percentage: Optional[float] = None
    variants: Tuple[Variant, ...] = ()
    targeting: Tuple[TargetingRule, ...] = ()
    match_mode: MatchMode = MatchMode.ALL
    segments: Tuple[str, ...] = ()
    prerequisites: Tuple[str, ...] = ()
    mutex: Tuple[str, ...] = ()
    description: str = ""
    salt: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    # prerequisite key -> variant that prerequisite must be serving
    required_variants: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("variants", "targeting", "segments", "prerequisites", "mutex"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        object.__setattr__(self, "tags", frozenset(self.tags))
        object.__setattr__(self, "required_variants", _freeze_mapping(self.required_variants))

    @property
    def has_targeting(self) -> bool:
        return bool(self.targeting or self.segments)

    @property
    def hash_salt(self) -> str:
        return self.salt or ""


@dataclass(frozen=True)
class EvaluationContext:
    """Who a flag is being evaluated for."""

    subject_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", _freeze_mapping(self.attributes))

    @property
    def has_subject(self) -> bool:
        return isinstance(self.subject_id, str) and self.subject_id != ""


@dataclass(frozen=True)
class EvaluationResult:
    """Result of a single flag evaluation."""

    flag_key: str
    enabled: bool
    reason: Reason
    variant: Optional[str] = None
    payload: Any = None
    bucket: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "flag_key": self.flag_key,
            "enabled": self.enabled,
            "variant": self.variant,
            "payload": self.payload,
            "reason": self.reason.value,
            "bucket": self.bucket,
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable flag + segment configuration."""

    flags: Mapping[str, FlagDefinition] = field(default_factory=dict)
    segments: Mapping[str, Segment] = field(default_factory=dict)
    version: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "flags", _freeze_mapping(self.flags))
        object.__setattr__(self, "segments", _freeze_mapping(self.segments))

    @classmethod
    def from_definitions(
        cls,
        flags: Tuple[FlagDefinition, ...] | list,
        segments: Tuple[Segment, ...] | list = (),
        version: str = "",
    ) -> "ConfigSnapshot":
        """Build a snapshot keyed by flag key / segment name."""
        return cls(
            flags={flag.key: flag for flag in flags},
            segments={segment.name: segment for segment in segments},
            version=version,
        )

    def get_flag(self, key: str) -> Optional[FlagDefinition]:
        return self.flags.get(key)

    def get_segment(self, name: str) -> Optional[Segment]:
        return self.segments.get(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self.flags)

    def __len__(self) -> int:
        return len(self.flags)

    def __contains__(self, key: object) -> bool:
        return key in self.flags


__all__ = [
    "MatchMode",
    "Operator",
    "Reason",
    "Variant",
    "TargetingRule",
    "Segment",
    "FlagDefinition",
    "EvaluationContext",
    "EvaluationResult",
    "ConfigSnapshot",
]
