import logging
import os

import pytest

from flagkit.core.config import reset_settings
from flagkit.core.feature_flags import (
    ConfigSnapshot,
    FlagDefinition,
    MatchMode,
    Operator,
    Segment,
    TargetingRule,
    reset_feature_client,
)

# Environment variables that tests may modify
_ENV_VARS_TO_ISOLATE = [
    "FLAGKIT_LOG_LEVEL",
    "FLAGKIT_LOG_JSON",
    "FLAGKIT_CONFIG_PATH",
    "FLAGKIT_EXPOSURE_ENABLED",
    "FLAGKIT_EXPOSURE_DEDUP_WINDOW_SECONDS",
    "FLAGKIT_EXPOSURE_MAX_PER_SUBJECT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_feature_client()
        reset_settings()


@pytest.fixture
def restore_root_logging():
    """Drop root handlers installed by setup_structured_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    try:
        yield
    finally:
        for handler in root.handlers[:]:
            if handler not in handlers:
                root.removeHandler(handler)
        root.setLevel(level)


@pytest.fixture
def make_snapshot():
    """Build a snapshot from flag definitions (and optional segments)."""

    def _make(*flags: FlagDefinition, segments=(), version: str = "test") -> ConfigSnapshot:
        return ConfigSnapshot.from_definitions(list(flags), list(segments), version=version)

    return _make


@pytest.fixture
def beta_segment() -> Segment:
    return Segment(
        name="beta-users",
        rules=(TargetingRule("plan", Operator.IN, ("pro", "enterprise")),),
        match_mode=MatchMode.ALL,
        included=frozenset({"vip-1"}),
        excluded=frozenset({"banned-1"}),
    )
