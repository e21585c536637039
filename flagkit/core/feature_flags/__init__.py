"""Feature flag evaluation.

Provides:
- Deterministic percentage rollout
- Attribute and segment targeting
- Weighted multi-variant assignment
- Prerequisites and mutex groups
- Exposure tracking
"""

from flagkit.core.feature_flags.client import (
    FeatureFlagClient,
    get_feature_client,
    is_enabled,
    reset_feature_client,
)
from flagkit.core.feature_flags.decorators import (
    FeatureFlagMiddleware,
    feature_flag,
    feature_variant,
)
from flagkit.core.feature_flags.dependencies import DependencyResolver, Resolution
from flagkit.core.feature_flags.engine import FlagEngine, evaluate, evaluate_all
from flagkit.core.feature_flags.exposure import (
    ExposureEvent,
    ExposureRecord,
    ExposureSink,
    ExposureSummary,
    ExposureTracker,
    LoggingExposureSink,
)
from flagkit.core.feature_flags.hashing import BUCKET_SPACE, bucket
from flagkit.core.feature_flags.models import (
    ConfigSnapshot,
    EvaluationContext,
    EvaluationResult,
    FlagDefinition,
    MatchMode,
    Operator,
    Reason,
    Segment,
    TargetingRule,
    Variant,
)
from flagkit.core.feature_flags.rules import RuleEvaluator, evaluate_rule, evaluate_rule_set
from flagkit.core.feature_flags.schema import load_snapshot, snapshot_from_dict, snapshot_to_dict
from flagkit.core.feature_flags.validation import ValidationIssue, validate_snapshot
from flagkit.core.feature_flags.variants import SelectedVariant, VariantSelector, build_ranges

__all__ = [
    # Model
    "ConfigSnapshot",
    "EvaluationContext",
    "EvaluationResult",
    "FlagDefinition",
    "MatchMode",
    "Operator",
    "Reason",
    "Segment",
    "TargetingRule",
    "Variant",
    # Engine
    "BUCKET_SPACE",
    "bucket",
    "RuleEvaluator",
    "evaluate_rule",
    "evaluate_rule_set",
    "SelectedVariant",
    "VariantSelector",
    "build_ranges",
    "DependencyResolver",
    "Resolution",
    "FlagEngine",
    "evaluate",
    "evaluate_all",
    # Exposure
    "ExposureEvent",
    "ExposureRecord",
    "ExposureSink",
    "ExposureSummary",
    "ExposureTracker",
    "LoggingExposureSink",
    # Configuration
    "load_snapshot",
    "snapshot_from_dict",
    "snapshot_to_dict",
    "ValidationIssue",
    "validate_snapshot",
    # Client
    "FeatureFlagClient",
    "get_feature_client",
    "is_enabled",
    "reset_feature_client",
    "FeatureFlagMiddleware",
    "feature_flag",
    "feature_variant",
]
