"""
Retry backoff strategies with jitter, attempt logging and a retry runner.
"""
from .types import (
    Unit,
    AttemptOutcome,
    AttemptLog,
    DelayTracker,
    BackoffConfig,
    JitterType,
)
from .errors import (
    BackoffError,
    BackoffInitialisationError,
    BackoffRuntimeError,
)
from .config import (
    DEFAULT_BACKOFF_CONFIG,
    merge_config,
    validate_config,
    load_config,
    config_from_env,
    convert_timespan,
    async_sleep,
    sync_sleep,
)
from .algorithms import (
    BackoffAlgorithm,
    FixedBackoffAlgorithm,
    LinearBackoffAlgorithm,
    ExponentialBackoffAlgorithm,
    PolynomialBackoffAlgorithm,
    FibonacciBackoffAlgorithm,
    DecorrelatedBackoffAlgorithm,
    RandomBackoffAlgorithm,
    SequenceBackoffAlgorithm,
    CallbackBackoffAlgorithm,
    NoopBackoffAlgorithm,
    NoBackoffAlgorithm,
)
from .jitter import (
    Jitter,
    RangeJitter,
    FullJitter,
    EqualJitter,
    CallbackJitter,
)
from .calculator import DelayCalculator
from .dispatch import (
    Argument,
    CallbackSpec,
    ParamRequirement,
    call_if_possible,
    dispatch,
    flatten_callbacks,
)
from .backoff import (
    Backoff,
    create_backoff,
)


__all__ = [
    # Types
    "Unit",
    "AttemptOutcome",
    "AttemptLog",
    "DelayTracker",
    "BackoffConfig",
    "JitterType",
    # Errors
    "BackoffError",
    "BackoffInitialisationError",
    "BackoffRuntimeError",
    # Config
    "DEFAULT_BACKOFF_CONFIG",
    "merge_config",
    "validate_config",
    "load_config",
    "config_from_env",
    "convert_timespan",
    "async_sleep",
    "sync_sleep",
    # Algorithms
    "BackoffAlgorithm",
    "FixedBackoffAlgorithm",
    "LinearBackoffAlgorithm",
    "ExponentialBackoffAlgorithm",
    "PolynomialBackoffAlgorithm",
    "FibonacciBackoffAlgorithm",
    "DecorrelatedBackoffAlgorithm",
    "RandomBackoffAlgorithm",
    "SequenceBackoffAlgorithm",
    "CallbackBackoffAlgorithm",
    "NoopBackoffAlgorithm",
    "NoBackoffAlgorithm",
    # Jitter
    "Jitter",
    "RangeJitter",
    "FullJitter",
    "EqualJitter",
    "CallbackJitter",
    # Calculator
    "DelayCalculator",
    # Dispatch
    "Argument",
    "CallbackSpec",
    "ParamRequirement",
    "call_if_possible",
    "dispatch",
    "flatten_callbacks",
    # Backoff
    "Backoff",
    "create_backoff",
]


__version__ = "1.0.0"
