"""
Exceptions raised by retry_backoff
"""
from typing import Union


Number = Union[int, float]


class BackoffError(Exception):
    """Base class for every error raised by retry_backoff."""

    code = "BACKOFF_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.name = type(self).__name__


class BackoffInitialisationError(BackoffError, ValueError):
    """Raised when a backoff is configured with invalid static settings."""

    code = "BACKOFF_INITIALISATION"

    @classmethod
    def rand_min_is_greater_than_max(cls, min_value: Number, max_value: Number) -> "BackoffInitialisationError":
        return cls(f"A min value ({min_value}) was given that is greater than the max value ({max_value})")

    @classmethod
    def invalid_unit_type(cls, unit: object) -> "BackoffInitialisationError":
        return cls(f'Invalid unit type "{unit}" was given')

    @classmethod
    def invalid_callback(cls, value: object) -> "BackoffInitialisationError":
        return cls(f"Callbacks must be callable, {type(value).__name__} given")

    @classmethod
    def invalid_config(cls, errors: list[str]) -> "BackoffInitialisationError":
        return cls("Invalid backoff configuration: " + "; ".join(errors))


class BackoffRuntimeError(BackoffError, RuntimeError):
    """Raised when a backoff is used out of order, or a callback misbehaves."""

    code = "BACKOFF_RUNTIME"

    @classmethod
    def callback_algorithm_gave_invalid_return_value(cls, value: object) -> "BackoffRuntimeError":
        return cls(
            f"The CallbackBackoffAlgorithm callback gave an invalid return value ({type(value).__name__})"
        )

    @classmethod
    def attempt_to_change_after_start(cls, method: str) -> "BackoffRuntimeError":
        return cls(f'Backoff strategies cannot be reconfigured after starting - attempted to call "{method}"')

    @classmethod
    def start_of_attempt_not_allowed(cls) -> "BackoffRuntimeError":
        return cls("Method start_of_attempt() cannot be called after the Backoff has stopped")

    @classmethod
    def attempt_log_has_not_started(cls) -> "BackoffRuntimeError":
        return cls("Method end_of_attempt() was called without start_of_attempt() being called first")
