"""Snapshot schema and loading.

Configuration arrives from providers as JSON-shaped mappings:

    {
        "version": "42",
        "flags": {
            "checkout-experiment": {
                "enabled": true,
                "variants": [{"name": "control", "weight": 34}, ...],
                "targeting": {"matchMode": "any", "rules": [...]},
                "segments": ["beta-users"],
                "prerequisites": ["new-checkout", {"key": "pricing", "requiredVariant": "b"}],
                "mutex": ["legacy-checkout"]
            }
        },
        "segments": {"beta-users": {"rules": [...], "included": ["user-1"]}}
    }

Both camelCase and snake_case keys are accepted. Structural problems raise
``ConfigurationError``; rule-level problems (unknown operators, bad rule
values, unknown segment names) load fine and degrade at evaluation time.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from flagkit.core.errors import ConfigurationError, ErrorCode
from flagkit.core.feature_flags.models import (
    ConfigSnapshot,
    FlagDefinition,
    MatchMode,
    Operator,
    Segment,
    TargetingRule,
    Variant,
)

logger = logging.getLogger(__name__)


class _SchemaModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VariantModel(_SchemaModel):
    name: str
    weight: float = Field(0, ge=0)
    payload: Any = None

    def to_variant(self) -> Variant:
        return Variant(name=self.name, weight=self.weight, payload=self.payload)


class PrerequisiteModel(_SchemaModel):
    key: str
    required_variant: Optional[str] = Field(None, alias="requiredVariant")


class TargetingRuleModel(_SchemaModel):
    attribute: str
    operator: str
    value: Any = None
    negate: bool = False
    case_sensitive: bool = Field(True, alias="caseSensitive")

    def to_rule(self) -> TargetingRule:
        try:
            operator: Any = Operator(self.operator)
        except ValueError:
            # kept as-is; the rule evaluates false and is reported at evaluation
            operator = self.operator
        value = tuple(self.value) if isinstance(self.value, list) else self.value
        return TargetingRule(
            attribute=self.attribute,
            operator=operator,
            value=value,
            negate=self.negate,
            case_sensitive=self.case_sensitive,
        )


def _unwrap_rule_block(data: Any) -> Any:
    """Accept ``{"targeting": {"rules": [...], "matchMode": ...}}``."""
    if isinstance(data, dict):
        for field_name in ("targeting", "rules"):
            block = data.get(field_name)
            if isinstance(block, dict):
                data = dict(data)
                data[field_name] = block.get("rules", [])
                mode = block.get("matchMode", block.get("match_mode"))
                if mode is not None:
                    data["matchMode"] = mode
    return data


class SegmentModel(_SchemaModel):
    name: Optional[str] = None
    rules: List[TargetingRuleModel] = Field(default_factory=list)
    match_mode: MatchMode = Field(MatchMode.ALL, alias="matchMode")
    included: List[str] = Field(default_factory=list)
    excluded: List[str] = Field(default_factory=list)
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        return _unwrap_rule_block(data)

    def to_segment(self, name: str) -> Segment:
        return Segment(
            name=name,
            rules=tuple(rule.to_rule() for rule in self.rules),
            match_mode=self.match_mode,
            included=frozenset(self.included),
            excluded=frozenset(self.excluded),
            description=self.description,
        )


class FlagModel(_SchemaModel):
    key: Optional[str] = None
    enabled: bool = False
    percentage: Optional[float] = Field(None, ge=0, le=100)
    variants: List[VariantModel] = Field(default_factory=list)
    targeting: List[TargetingRuleModel] = Field(default_factory=list)
    match_mode: MatchMode = Field(MatchMode.ALL, alias="matchMode")
    segments: List[str] = Field(default_factory=list)
    prerequisites: List[Union[str, PrerequisiteModel]] = Field(default_factory=list)
    mutex: List[str] = Field(default_factory=list)
    description: str = ""
    salt: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        return _unwrap_rule_block(data)

    def to_definition(self, key: str) -> FlagDefinition:
        return FlagDefinition(
            key=key,
            enabled=self.enabled,
            percentage=self.percentage,
            variants=tuple(variant.to_variant() for variant in self.variants),
            targeting=tuple(rule.to_rule() for rule in self.targeting),
            match_mode=self.match_mode,
            segments=tuple(self.segments),
            prerequisites=tuple(
                p if isinstance(p, str) else p.key for p in self.prerequisites
            ),
            required_variants={
                p.key: p.required_variant
                for p in self.prerequisites
                if not isinstance(p, str) and p.required_variant is not None
            },
            mutex=tuple(self.mutex),
            description=self.description,
            salt=self.salt,
            tags=frozenset(self.tags),
        )


def _index(items: Any, id_field: str) -> Any:
    """Turn a list of objects into a mapping keyed by ``id_field``."""
    if not isinstance(items, list):
        return items
    indexed: Dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict) or not item.get(id_field):
            raise ValueError(f"list entries must be objects with a '{id_field}'")
        if item[id_field] in indexed:
            raise ValueError(f"duplicate {id_field} '{item[id_field]}'")
        indexed[item[id_field]] = item
    return indexed


class SnapshotModel(_SchemaModel):
    version: str = ""
    flags: Dict[str, FlagModel] = Field(default_factory=dict)
    segments: Dict[str, SegmentModel] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _index_lists(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "flags" in data:
                data["flags"] = _index(data["flags"], "key")
            if "segments" in data:
                data["segments"] = _index(data["segments"], "name")
            if isinstance(data.get("version"), int):
                data["version"] = str(data["version"])
        return data

    @model_validator(mode="after")
    def _check_keys(self) -> "SnapshotModel":
        for key, flag in self.flags.items():
            if flag.key is not None and flag.key != key:
                raise ValueError(f"flag entry '{key}' declares mismatched key '{flag.key}'")
        for name, segment in self.segments.items():
            if segment.name is not None and segment.name != name:
                raise ValueError(f"segment entry '{name}' declares mismatched name '{segment.name}'")
        return self

    def to_snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            flags={key: flag.to_definition(key) for key, flag in self.flags.items()},
            segments={name: segment.to_segment(name) for name, segment in self.segments.items()},
            version=self.version,
        )


def snapshot_from_dict(data: Dict[str, Any]) -> ConfigSnapshot:
    """Validate a configuration mapping and build an immutable snapshot.

    Raises:
        ConfigurationError: the mapping does not match the schema.
    """
    try:
        model = SnapshotModel.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"invalid flag configuration: {e.error_count()} error(s)",
            code=ErrorCode.SCHEMA_VALIDATION_FAILED,
            errors=e.errors(),
        ) from e
    snapshot = model.to_snapshot()
    logger.info(
        f"Loaded flag snapshot version '{snapshot.version}' "
        f"({len(snapshot.flags)} flags, {len(snapshot.segments)} segments)"
    )
    return snapshot


def load_snapshot(path: Union[str, Path]) -> ConfigSnapshot:
    """Read a JSON configuration file into a snapshot."""
    file_path = Path(path)
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f"cannot read flag configuration from {file_path}: {e}",
            code=ErrorCode.SCHEMA_VALIDATION_FAILED,
        ) from e
    return snapshot_from_dict(data)


def snapshot_to_dict(snapshot: ConfigSnapshot) -> Dict[str, Any]:
    """Serialize a snapshot back to the JSON-shaped configuration format."""

    def rule_dict(rule: TargetingRule) -> Dict[str, Any]:
        value = list(rule.value) if isinstance(rule.value, (tuple, set, frozenset)) else rule.value
        return {
            "attribute": rule.attribute,
            "operator": rule.operator.value if isinstance(rule.operator, Operator) else rule.operator,
            "value": value,
            "negate": rule.negate,
            "caseSensitive": rule.case_sensitive,
        }

    return {
        "version": snapshot.version,
        "flags": {
            key: {
                "key": flag.key,
                "enabled": flag.enabled,
                "percentage": flag.percentage,
                "variants": [
                    {"name": v.name, "weight": v.weight, "payload": v.payload} for v in flag.variants
                ],
                "targeting": [rule_dict(rule) for rule in flag.targeting],
                "matchMode": flag.match_mode.value,
                "segments": list(flag.segments),
                "prerequisites": [
                    {"key": p, "requiredVariant": flag.required_variants[p]}
                    if p in flag.required_variants
                    else p
                    for p in flag.prerequisites
                ],
                "mutex": list(flag.mutex),
                "description": flag.description,
                "salt": flag.salt,
                "tags": sorted(flag.tags),
            }
            for key, flag in snapshot.flags.items()
        },
        "segments": {
            name: {
                "name": segment.name,
                "rules": [rule_dict(rule) for rule in segment.rules],
                "matchMode": segment.match_mode.value,
                "included": sorted(segment.included),
                "excluded": sorted(segment.excluded),
                "description": segment.description,
            }
            for name, segment in snapshot.segments.items()
        },
    }


__all__ = [
    "FlagModel",
    "SegmentModel",
    "SnapshotModel",
    "TargetingRuleModel",
    "VariantModel",
    "load_snapshot",
    "snapshot_from_dict",
    "snapshot_to_dict",
]
