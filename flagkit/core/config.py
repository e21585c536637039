"""Runtime settings for flagkit.

Values come from the environment (prefix ``FLAGKIT_``) or an optional
``.env`` file.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    SERVICE_NAME: str = "flagkit"
    ENVIRONMENT: str = "production"

    # JSON snapshot loaded by get_feature_client()
    CONFIG_PATH: Optional[str] = None

    EXPOSURE_ENABLED: bool = True
    EXPOSURE_DEDUP_WINDOW_SECONDS: float = 24 * 60 * 60
    EXPOSURE_MAX_PER_SUBJECT: int = 100

    model_config = {
        "env_prefix": "FLAGKIT_",
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
