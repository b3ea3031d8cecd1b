"""
Configuration utilities for retry_backoff
"""
import asyncio
import logging
import os
import time
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import BackoffInitialisationError
from .types import BackoffConfig, Number, Unit

logger = logging.getLogger(__name__)

LOG_PREFIX = "[retry_backoff.config]"


# Default backoff configuration
DEFAULT_BACKOFF_CONFIG = BackoffConfig(
    max_attempts=None,
    max_delay=None,
    unit=Unit.SECONDS,
    jitter="full",
    runs_at_start_of_loop=False,
    immediate_first_retry=False,
    delays_enabled=True,
    retries_enabled=True,
)

_ENV_FIELDS = (
    "max_attempts",
    "max_delay",
    "unit",
    "jitter",
    "jitter_min",
    "jitter_max",
    "runs_at_start_of_loop",
    "immediate_first_retry",
    "delays_enabled",
    "retries_enabled",
)


def merge_config(config: Optional[BackoffConfig] = None, **overrides: Any) -> BackoffConfig:
    """
    Layer keyword overrides on top of a configuration.

    Args:
        config: Base configuration (default: DEFAULT_BACKOFF_CONFIG)
        **overrides: BackoffConfig fields to replace

    Returns:
        The base configuration itself when nothing is overridden, otherwise a validated copy

    Raises:
        BackoffInitialisationError: When an override is unknown or invalid
    """
    base = DEFAULT_BACKOFF_CONFIG if config is None else config
    if not overrides:
        return base
    logger.debug(f"{LOG_PREFIX} merge_config: overriding {sorted(overrides)}")
    return load_config({**base.model_dump(), **overrides})


def validate_config(config: BackoffConfig) -> list[str]:
    """Validate cross-field configuration values"""
    errors = []

    if config.jitter == "range" and config.jitter_min > config.jitter_max:
        errors.append("jitter_min cannot exceed jitter_max")

    if config.max_attempts == 0 and config.retries_enabled:
        logger.debug(f"{LOG_PREFIX} validate_config: max_attempts=0 means no attempt will be made")

    return errors


def load_config(data: Optional[Mapping[str, Any]]) -> BackoffConfig:
    """
    Build a BackoffConfig from a mapping (e.g. a section of a YAML file).

    Args:
        data: Raw configuration values

    Returns:
        Validated configuration

    Raises:
        BackoffInitialisationError: When the data doesn't describe a valid configuration
    """
    if not data:
        return DEFAULT_BACKOFF_CONFIG

    try:
        config = BackoffConfig.model_validate(dict(data))
    except ValidationError as error:
        messages = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in error.errors()
        ]
        logger.debug(f"{LOG_PREFIX} load_config: rejected {len(messages)} field(s)")
        raise BackoffInitialisationError.invalid_config(messages) from error

    errors = validate_config(config)
    if errors:
        raise BackoffInitialisationError.invalid_config(errors)
    return config


def config_from_env(
    prefix: str = "BACKOFF_",
    environ: Optional[Mapping[str, str]] = None,
) -> BackoffConfig:
    """
    Build a BackoffConfig from environment variables.

    Reads BACKOFF_MAX_ATTEMPTS, BACKOFF_MAX_DELAY, BACKOFF_UNIT, BACKOFF_JITTER etc.
    Variables that aren't set keep their default value.

    Args:
        prefix: Environment variable prefix
        environ: Mapping to read from (default: os.environ)

    Returns:
        Validated configuration
    """
    source = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    for name in _ENV_FIELDS:
        raw = source.get(f"{prefix}{name.upper()}")
        if raw is None or raw == "":
            continue
        if name != "jitter" and raw.lower() in ("none", "null"):
            data[name] = None
            continue
        data[name] = raw

    logger.debug(f"{LOG_PREFIX} config_from_env: found {sorted(data)} with prefix {prefix}")
    return load_config(data)


def convert_timespan(
    value: Optional[Number],
    from_unit: Union[Unit, str],
    to_unit: Union[Unit, str],
) -> Optional[Number]:
    """
    Convert a timespan between units.

    Args:
        value: The timespan (None passes through)
        from_unit: The unit the value is expressed in
        to_unit: The desired unit

    Returns:
        The converted value
    """
    return Unit.parse(from_unit).convert(value, Unit.parse(to_unit))


async def async_sleep(seconds: float) -> None:
    """Default async sleeper used by Backoff.step_async()"""
    logger.debug(f"{LOG_PREFIX} async_sleep: waiting {seconds}s")
    await asyncio.sleep(seconds)


def sync_sleep(seconds: float) -> None:
    """Default sleeper used by Backoff.step() and Backoff.attempt()"""
    logger.debug(f"{LOG_PREFIX} sync_sleep: waiting {seconds}s")
    time.sleep(seconds)
