import logging
import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)


class RuleSettings(BaseModel):
    """Settings for one rate limiting rule"""
    model_config = ConfigDict(frozen=True, strict=True)

    name: str = Field("api", min_length=1, description="Rule name, used as key prefix and in headers")
    burst: int = Field(20, gt=0, description="Maximum and initial tokens per client")
    milliseconds_per_token: int = Field(1000, gt=0, description="Milliseconds needed to regenerate one token")
    path_prefix: str = Field("/api/", description="Requests whose path starts with this prefix are limited")


class LimiterSettings(BaseModel):
    """Top level rate limiter settings"""
    model_config = ConfigDict(frozen=True)

    rules: List[RuleSettings] = Field(default_factory=lambda: [RuleSettings()])
    eviction_interval_seconds: int = Field(300, ge=0, description="Seconds between idle bucket sweeps, 0 disables")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfiguration(f"{name} must be an integer, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> LimiterSettings:
    """
    Build settings from environment variables.

    RATE_LIMIT_BURST, RATE_LIMIT_MS_PER_TOKEN, RATE_LIMIT_PATH_PREFIX and
    RATE_LIMIT_EVICTION_INTERVAL override the defaults.
    """
    env = os.environ if env is None else env
    try:
        rule = RuleSettings(
            name=env.get("RATE_LIMIT_RULE_NAME", "api"),
            burst=_int_env(env, "RATE_LIMIT_BURST", 20),
            milliseconds_per_token=_int_env(env, "RATE_LIMIT_MS_PER_TOKEN", 1000),
            path_prefix=env.get("RATE_LIMIT_PATH_PREFIX", "/api/"),
        )
        settings = LimiterSettings(
            rules=[rule],
            eviction_interval_seconds=_int_env(env, "RATE_LIMIT_EVICTION_INTERVAL", 300),
        )
    except ValidationError as e:
        logger.error(f"Invalid rate limit settings: {e}")
        raise InvalidConfiguration(str(e)) from e

    logger.info(f"Loaded rate limit settings: {settings.model_dump()}")
    return settings
