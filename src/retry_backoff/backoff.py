"""
Backoff engine and retry runner
"""
import functools
import inspect
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from random import Random
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar, Union

from .algorithms import (
    BackoffAlgorithm,
    CallbackBackoffAlgorithm,
    DecorrelatedBackoffAlgorithm,
    DelayCallback,
    ExponentialBackoffAlgorithm,
    FibonacciBackoffAlgorithm,
    FixedBackoffAlgorithm,
    LinearBackoffAlgorithm,
    NoBackoffAlgorithm,
    NoopBackoffAlgorithm,
    PolynomialBackoffAlgorithm,
    RandomBackoffAlgorithm,
    SequenceBackoffAlgorithm,
)
from .calculator import DelayCalculator
from .config import async_sleep, merge_config, sync_sleep
from .dispatch import Argument, CallbackSpec, call_if_possible, dispatch, flatten_callbacks
from .errors import BackoffInitialisationError, BackoffRuntimeError
from .jitter import CallbackJitter, EqualJitter, FullJitter, Jitter, JitterCallback, RangeJitter
from .types import AttemptLog, AttemptOutcome, BackoffConfig, DelayTracker, Number, Unit

logger = logging.getLogger(__name__)

LOG_PREFIX = "[retry_backoff.backoff]"

T = TypeVar("T")

_UNSET: Any = object()

_RUNTIME_KWARGS = ("sleeper", "async_sleeper", "rng")

# every name a callback can ask for, whether or not it's on offer for that callback
_ARGUMENT_NAMES = frozenset({
    "result",
    "value",
    "exception",
    "e",
    "error",
    "will_retry",
    "log",
    "attempt_log",
    "logs",
    "attempt_logs",
})


def _before_start(method: Callable[..., T]) -> Callable[..., T]:
    """Reject configuration changes once the backoff has started."""

    @functools.wraps(method)
    def wrapper(self: "Backoff", *args: Any, **kwargs: Any) -> T:
        if self._started:
            raise BackoffRuntimeError.attempt_to_change_after_start(method.__name__)
        # delays are worked out again with the new settings
        self._calculator = None
        return method(self, *args, **kwargs)

    return wrapper


@dataclass
class _PossibleMatch:
    """An exception type, result value or predicate, with the default to return when it matches"""

    value: Any = True
    has_default: bool = False
    default: Any = None
    strict: bool = False
    predicate: Optional[CallbackSpec] = None

    @property
    def matches_everything(self) -> bool:
        return self.value is True and self.predicate is None


@dataclass
class _Verdict:
    """How the engine reads one attempt's outcome"""

    succeeded: bool
    stop: bool = False
    fatal: bool = False
    override_default: bool = False
    override_with: Any = None


class Backoff:
    """
    Backoff strategy and retry runner.

    Works out the delays between attempts, and can drive the whole retry loop:

    - Pluggable backoff algorithms, with optional jitter
    - Max attempts / max delay bounds
    - Retry on exceptions and/or invalid results
    - Success, failure, invalid-result, exception and finally callbacks

    Example:
        result = (
            Backoff.exponential(0.1)
            .max_attempts(5)
            .retry_exceptions(ConnectionError)
            .attempt(fetch_data, default=None)
        )

    Or drive the loop yourself:
        backoff = Backoff.linear(1).max_attempts(3)
        while backoff.step():
            ...
    """

    def __init__(
        self,
        algorithm: BackoffAlgorithm,
        jitter: Optional[Jitter] = None,
        max_attempts: Optional[int] = None,
        max_delay: Optional[Number] = None,
        unit: Union[Unit, str] = Unit.SECONDS,
        runs_at_start_of_loop: bool = False,
        immediate_first_retry: bool = False,
        delays_enabled: bool = True,
        retries_enabled: bool = True,
        sleeper: Optional[Callable[[float], None]] = None,
        async_sleeper: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[Random] = None,
    ) -> None:
        """
        Create a new Backoff.

        Args:
            algorithm: The backoff algorithm that works out the base delays
            jitter: Jitter applied to the base delays (None for no jitter)
            max_attempts: Maximum number of attempts, including the first (None for no limit)
            max_delay: Upper bound for base delays (None for no bound)
            unit: Unit the delays are expressed in
            runs_at_start_of_loop: Whether step() is called before the first attempt
            immediate_first_retry: Whether the first retry happens with no delay
            delays_enabled: When False, every delay becomes 0
            retries_enabled: When False, only the first attempt is made
            sleeper: Waits for a number of seconds (default: time.sleep)
            async_sleeper: Async equivalent, used by step_async() (default: asyncio.sleep)
            rng: Random source handed to jitters created by this backoff

        Raises:
            BackoffInitialisationError: When unit is invalid
        """
        self._algorithm = algorithm
        self._jitter = jitter
        self._max_attempts = max_attempts
        self._max_delay = max_delay
        self._unit = Unit.parse(unit)
        self._runs_at_start_of_loop = runs_at_start_of_loop
        self._immediate_first_retry = immediate_first_retry
        self._delays_enabled = delays_enabled
        self._retries_enabled = retries_enabled
        self._sleeper = sleeper or sync_sleep
        self._async_sleeper = async_sleeper or async_sleep
        self._rng = rng

        # retry rules, None means no exception is retried
        self._retry_exceptions: Optional[list[_PossibleMatch]] = []
        self._has_exception_default = False
        self._exception_default: Any = None
        self._retry_when_result: list[_PossibleMatch] = []
        self._retry_until_result: list[_PossibleMatch] = []

        self._exception_callbacks: list[CallbackSpec] = []
        self._invalid_result_callbacks: list[CallbackSpec] = []
        self._success_callbacks: list[CallbackSpec] = []
        self._failure_callbacks: list[CallbackSpec] = []
        self._finally_callbacks: list[CallbackSpec] = []

        self._logs: list[AttemptLog] = []
        self.reset()

    @classmethod
    def new(cls, algorithm: BackoffAlgorithm, **kwargs: Any) -> "Backoff":
        """Alternative constructor, see __init__ for the arguments."""
        return cls(algorithm, **kwargs)

    @classmethod
    def from_config(
        cls,
        algorithm: BackoffAlgorithm,
        config: Optional[BackoffConfig] = None,
        **kwargs: Any,
    ) -> "Backoff":
        """
        Create a Backoff from static configuration.

        Args:
            algorithm: The backoff algorithm to use
            config: The configuration (default: DEFAULT_BACKOFF_CONFIG)
            **kwargs: sleeper, async_sleeper or rng. Anything else overrides a config field

        Returns:
            A new, unstarted Backoff
        """
        overrides = {name: kwargs.pop(name) for name in list(kwargs) if name not in _RUNTIME_KWARGS}
        config = merge_config(config, **overrides)
        rng = kwargs.get("rng")
        jitter: Optional[Jitter]
        if config.jitter == "full":
            jitter = FullJitter(rng=rng)
        elif config.jitter == "equal":
            jitter = EqualJitter(rng=rng)
        elif config.jitter == "range":
            jitter = RangeJitter(config.jitter_min, config.jitter_max, rng=rng)
        else:
            jitter = None

        return cls(
            algorithm,
            jitter=jitter,
            max_attempts=config.max_attempts,
            max_delay=config.max_delay,
            unit=config.unit,
            runs_at_start_of_loop=config.runs_at_start_of_loop,
            immediate_first_retry=config.immediate_first_retry,
            delays_enabled=config.delays_enabled,
            retries_enabled=config.retries_enabled,
            **kwargs,
        )

    # instantiation - one per backoff algorithm

    @classmethod
    def fixed(cls, delay: Number, unit: Union[Unit, str] = Unit.SECONDS, rng: Optional[Random] = None) -> "Backoff":
        return cls(FixedBackoffAlgorithm(delay), unit=unit, rng=rng).full_jitter()

    @classmethod
    def linear(
        cls,
        initial_delay: Number,
        delay_increase: Optional[Number] = None,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(LinearBackoffAlgorithm(initial_delay, delay_increase), unit=unit, rng=rng).full_jitter()

    @classmethod
    def exponential(
        cls,
        initial_delay: Number,
        factor: Number = 2,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(ExponentialBackoffAlgorithm(initial_delay, factor), unit=unit, rng=rng).full_jitter()

    @classmethod
    def polynomial(
        cls,
        initial_delay: Number,
        power: Number = 2,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(PolynomialBackoffAlgorithm(initial_delay, power), unit=unit, rng=rng).full_jitter()

    @classmethod
    def fibonacci(
        cls,
        initial_delay: Number,
        include_first: bool = True,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(FibonacciBackoffAlgorithm(initial_delay, include_first), unit=unit, rng=rng).full_jitter()

    @classmethod
    def decorrelated(
        cls,
        base_delay: Number,
        multiplier: Number = 3,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(DecorrelatedBackoffAlgorithm(base_delay, multiplier, rng=rng), unit=unit, rng=rng)

    @classmethod
    def random(
        cls,
        min_delay: Number,
        max_delay: Number,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(RandomBackoffAlgorithm(min_delay, max_delay, rng=rng), unit=unit, rng=rng)

    @classmethod
    def sequence(
        cls,
        delays: Sequence[Optional[Number]],
        repeat_last: Union[bool, Number] = False,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(SequenceBackoffAlgorithm(delays, repeat_last), unit=unit, rng=rng).full_jitter()

    @classmethod
    def callback(
        cls,
        callback: DelayCallback,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(CallbackBackoffAlgorithm(callback), unit=unit, rng=rng).full_jitter()

    @classmethod
    def custom(
        cls,
        algorithm: BackoffAlgorithm,
        unit: Union[Unit, str] = Unit.SECONDS,
        rng: Optional[Random] = None,
    ) -> "Backoff":
        return cls(algorithm, unit=unit, rng=rng).full_jitter()

    @classmethod
    def noop(cls) -> "Backoff":
        return cls(NoopBackoffAlgorithm())

    @classmethod
    def none(cls) -> "Backoff":
        return cls(NoBackoffAlgorithm())

    # configuration - jitter

    @_before_start
    def full_jitter(self) -> "Backoff":
        self._jitter = FullJitter(rng=self._rng)
        return self

    @_before_start
    def equal_jitter(self) -> "Backoff":
        self._jitter = EqualJitter(rng=self._rng)
        return self

    @_before_start
    def jitter_range(self, min_factor: Number, max_factor: Number) -> "Backoff":
        self._jitter = RangeJitter(min_factor, max_factor, rng=self._rng)
        return self

    @_before_start
    def jitter_callback(self, callback: JitterCallback) -> "Backoff":
        self._jitter = CallbackJitter(callback)
        return self

    @_before_start
    def custom_jitter(self, jitter: Optional[Jitter]) -> "Backoff":
        self._jitter = jitter
        return self

    @_before_start
    def no_jitter(self) -> "Backoff":
        self._jitter = None
        return self

    # configuration - bounds

    @_before_start
    def max_attempts(self, max_attempts: Optional[int]) -> "Backoff":
        self._max_attempts = max_attempts
        self._assess_initial_stopped_state()
        return self

    @_before_start
    def no_max_attempts(self) -> "Backoff":
        self._max_attempts = None
        self._assess_initial_stopped_state()
        return self

    @_before_start
    def no_attempt_limit(self) -> "Backoff":
        self._max_attempts = None
        self._assess_initial_stopped_state()
        return self

    @_before_start
    def max_delay(self, max_delay: Optional[Number]) -> "Backoff":
        self._max_delay = max_delay
        return self

    @_before_start
    def no_max_delay(self) -> "Backoff":
        self._max_delay = None
        return self

    @_before_start
    def no_delay_limit(self) -> "Backoff":
        self._max_delay = None
        return self

    # configuration - unit of measurement

    @_before_start
    def unit(self, unit: Union[Unit, str]) -> "Backoff":
        self._unit = Unit.parse(unit)
        return self

    @_before_start
    def unit_seconds(self) -> "Backoff":
        self._unit = Unit.SECONDS
        return self

    @_before_start
    def unit_ms(self) -> "Backoff":
        self._unit = Unit.MILLISECONDS
        return self

    @_before_start
    def unit_us(self) -> "Backoff":
        self._unit = Unit.MICROSECONDS
        return self

    # configuration - timing

    @_before_start
    def runs_at_start_of_loop(self, runs_at_start: bool = True) -> "Backoff":
        self._runs_at_start_of_loop = runs_at_start
        return self

    @_before_start
    def runs_at_end_of_loop(self) -> "Backoff":
        self._runs_at_start_of_loop = False
        return self

    @_before_start
    def immediate_first_retry(self, insert: bool = True) -> "Backoff":
        self._immediate_first_retry = insert
        return self

    @_before_start
    def no_immediate_first_retry(self) -> "Backoff":
        self._immediate_first_retry = False
        return self

    @_before_start
    def only_delay_when(self, condition: bool) -> "Backoff":
        """Delays are skipped (0) when condition is False. Attempts still stop as usual."""
        self._delays_enabled = bool(condition)
        return self

    @_before_start
    def only_retry_when(self, condition: bool) -> "Backoff":
        """Retries are disabled when condition is False, so only the first attempt is made."""
        self._retries_enabled = bool(condition)
        return self

    # retry rules

    def retry_exceptions(self, *exceptions: Any, default: Any = _UNSET) -> "Backoff":
        """
        Retry when one of these exceptions is raised.

        Args:
            *exceptions: Exception classes and/or predicates (e.g. lambda e: ...), nested lists allowed.
                Nothing means every exception
            default: Returned instead of raising, when these exceptions exhaust the attempts
        """
        has_default = default is not _UNSET
        matches = [_PossibleMatch(has_default=has_default, default=None if not has_default else default)]
        flat = _flatten(exceptions)
        if flat:
            matches = [self._exception_match(value, has_default, default) for value in flat]

        if self._retry_exceptions is None:
            self._retry_exceptions = []
        self._retry_exceptions.extend(matches)
        self._has_exception_default = False
        self._exception_default = None
        return self

    def retry_all_exceptions(self, default: Any = _UNSET) -> "Backoff":
        return self.retry_exceptions(default=default)

    def dont_retry_exceptions(self, default: Any = _UNSET) -> "Backoff":
        """Don't retry any exception. The default is returned instead of raising, when given."""
        self._retry_exceptions = None
        self._has_exception_default = default is not _UNSET
        self._exception_default = default if self._has_exception_default else None
        return self

    def retry_when(self, match: Any, strict: bool = False, default: Any = _UNSET) -> "Backoff":
        """
        Retry when the result matches (a value, or a predicate returning True). Resets retry_until().
        """
        has_default = default is not _UNSET
        self._retry_when_result.append(self._result_match(match, strict, has_default, default))
        self._retry_until_result = []
        return self

    def retry_until(self, match: Any, strict: bool = False) -> "Backoff":
        """
        Retry until the result matches (a value, or a predicate returning True). Resets retry_when().
        """
        self._retry_when_result = []
        self._retry_until_result.append(self._result_match(match, strict, False, None))
        return self

    # callbacks

    def exception_callback(self, *callbacks: Any) -> "Backoff":
        self._exception_callbacks.extend(_specs(callbacks))
        return self

    def invalid_result_callback(self, *callbacks: Any) -> "Backoff":
        self._invalid_result_callbacks.extend(_specs(callbacks))
        return self

    def success_callback(self, *callbacks: Any) -> "Backoff":
        self._success_callbacks.extend(_specs(callbacks))
        return self

    def failure_callback(self, *callbacks: Any) -> "Backoff":
        self._failure_callbacks.extend(_specs(callbacks))
        return self

    def fallback_callback(self, *callbacks: Any) -> "Backoff":
        return self.failure_callback(*callbacks)

    def finally_callback(self, *callbacks: Any) -> "Backoff":
        self._finally_callbacks.extend(_specs(callbacks))
        return self

    # state machine

    def reset(self) -> "Backoff":
        """Put the backoff back into its unstarted state, so it can be run again."""
        self._started = False
        self._assess_initial_stopped_state()
        self._attempt_index: Optional[int] = None
        self._calculator: Optional[DelayCalculator] = None
        self._instantiated_at = _now()
        self._first_attempt_occurred_at: Optional[datetime] = None
        self._attempt_started_at: Optional[float] = None
        self._overall_delay: Optional[Number] = None
        self._tracker: Optional[DelayTracker] = None
        return self

    def calculate(self) -> bool:
        """
        Move on to the next attempt and work out its delay, without waiting.

        Returns:
            False when no more attempts should be made
        """
        self._start()

        if self._stopped:
            return False

        # the first iteration, before the first attempt: nothing to wait for
        if self._runs_at_start_of_loop and self._attempt_index is None:
            self._attempt_index = 0
            return True

        self._attempt_index = (self._attempt_index or 0) + 1

        if not self._can_continue():
            self._stopped = True
            logger.debug(f"{LOG_PREFIX} calculate: stopped before attempt {self.current_attempt_number()}")
            return False

        return True

    def sleep(self) -> bool:
        """
        Wait for the current delay, using the sleeper.

        Returns:
            False when no more attempts should be made
        """
        proceed, seconds = self._prepare_sleep()
        if seconds:
            self._sleeper(seconds)
        return proceed

    def step(self) -> bool:
        """
        Calculate the next delay and wait for it.

        Returns:
            False when no more attempts should be made

        Example:
            while backoff.step():
                ...
        """
        self.calculate()
        return self.sleep()

    async def step_async(self) -> bool:
        """Async version of step(), waiting with the async sleeper."""
        self.calculate()
        proceed, seconds = self._prepare_sleep()
        if seconds:
            await self._async_sleeper(seconds)
        return proceed

    def start_of_attempt(self) -> "Backoff":
        """
        Record that an attempt is starting.

        Raises:
            BackoffRuntimeError: When the backoff has already stopped
        """
        self._start()

        if self._stopped:
            raise BackoffRuntimeError.start_of_attempt_not_allowed()

        attempt_number = self.current_attempt_number()
        index = attempt_number - 1
        if attempt_number <= 1:
            self._logs = []

        now = _now()
        if attempt_number == 1:
            self._first_attempt_occurred_at = now

        log = AttemptLog(
            attempt_number=attempt_number,
            max_attempts=self._max_attempts,
            first_attempt_occurred_at=self._first_attempt_occurred_at or self._instantiated_at,
            this_attempt_occurred_at=now,
            prev_delay=self._delay_calculator().get_jittered_delay(index),
            next_delay=self._next_delay(index),
            overall_delay=self._overall_delay,
            unit=self._unit,
        )

        if self._logs and self._logs[-1].attempt_number == attempt_number:
            self._logs[-1] = log
        else:
            self._logs.append(log)

        self._attempt_started_at = time.perf_counter()
        return self

    def end_of_attempt(
        self,
        result: Any = None,
        exception: Optional[BaseException] = None,
        outcome: Optional[AttemptOutcome] = None,
    ) -> "Backoff":
        """
        Record that the current attempt has finished.

        Args:
            result: The value the attempt produced
            exception: The exception the attempt raised
            outcome: How the attempt ended (default: EXCEPTION when an exception is given, else SUCCESS)

        Raises:
            BackoffRuntimeError: When start_of_attempt() wasn't called first
        """
        finished_at = time.perf_counter()
        attempt_number = self.current_attempt_number()
        log = self._logs[-1] if self._logs else None

        if not self._started or log is None or log.attempt_number != attempt_number:
            raise BackoffRuntimeError.attempt_log_has_not_started()

        # keep the earliest recorded finishing time
        if not log.is_open:
            return self

        started_at = self._attempt_started_at if self._attempt_started_at is not None else finished_at
        working_time = Unit.SECONDS.convert(finished_at - started_at, self._unit)
        overall_working_time = working_time
        if len(self._logs) > 1:
            overall_working_time += self._logs[-2].overall_working_time or 0

        if outcome is None:
            outcome = AttemptOutcome.EXCEPTION if exception is not None else AttemptOutcome.SUCCESS

        self._logs[-1] = replace(
            log,
            working_time=working_time,
            overall_working_time=overall_working_time,
            outcome=outcome,
            result=result,
            exception=exception,
        )
        return self

    def logs(self) -> tuple[AttemptLog, ...]:
        """Every attempt's log so far, oldest first."""
        return tuple(self._logs)

    def current_log(self) -> Optional[AttemptLog]:
        if not self._started or self._stopped or not self._logs:
            return None
        log = self._logs[-1]
        return log if log.attempt_number == self.current_attempt_number() else None

    def has_started(self) -> bool:
        return self._started

    def has_stopped(self) -> bool:
        return self._stopped

    def current_attempt_number(self) -> int:
        return (self._attempt_index or 0) + 1

    def is_first_attempt(self) -> bool:
        return self.current_attempt_number() == 1

    def is_last_attempt(self) -> bool:
        self._start()
        if self._stopped or not self._retries_enabled:
            return True
        return self._delay_calculator().should_stop(self.current_attempt_number())

    def get_unit(self) -> Unit:
        return self._unit

    def get_delay(self) -> Optional[Number]:
        """The delay before the current attempt, in the configured unit."""
        self._start()
        if self._stopped:
            return None
        return self._delay_calculator().get_jittered_delay(self._attempt_index or 0)

    def get_delay_in_seconds(self) -> Optional[Number]:
        return self._unit.convert(self.get_delay(), Unit.SECONDS)

    def get_delay_in_ms(self) -> Optional[Number]:
        return self._unit.convert(self.get_delay(), Unit.MILLISECONDS)

    def get_delay_in_us(self) -> Optional[Number]:
        return self._unit.convert(self.get_delay(), Unit.MICROSECONDS)

    # simulation

    def simulate(
        self,
        retry_start: int,
        retry_stop: Optional[int] = None,
        unit: Optional[Union[Unit, str]] = None,
    ) -> Union[Optional[Number], dict[int, Optional[Number]]]:
        """
        Preview the delays for a range of retries, without running anything.

        Args:
            retry_start: The first retry to report (starting at 1)
            retry_stop: The last retry to report. When omitted, only retry_start's delay is returned
            unit: The unit to report in (default: the configured unit)

        Returns:
            A single delay, or a dict of retry number -> delay
        """
        target = self._unit if unit is None else Unit.parse(unit)
        single = retry_stop is None
        stop = retry_start if retry_stop is None else retry_stop

        if retry_start < 1 or stop < retry_start:
            return None if single else {}

        delays = {
            retry_number: self._unit.convert(self._delay_calculator().get_jittered_delay(retry_number), target)
            for retry_number in range(retry_start, stop + 1)
        }
        return delays[retry_start] if single else delays

    def simulate_in_seconds(self, retry_start: int, retry_stop: Optional[int] = None):
        return self.simulate(retry_start, retry_stop, Unit.SECONDS)

    def simulate_in_ms(self, retry_start: int, retry_stop: Optional[int] = None):
        return self.simulate(retry_start, retry_stop, Unit.MILLISECONDS)

    def simulate_in_us(self, retry_start: int, retry_stop: Optional[int] = None):
        return self.simulate(retry_start, retry_stop, Unit.MICROSECONDS)

    def generate_test_sequence(self, max_steps: int) -> DelayTracker:
        """
        Step through the loop up to max_steps times, recording the delays instead of waiting.

        Returns:
            The recorded delays
        """
        tracker = DelayTracker()
        self._tracker = tracker
        for _ in range(max_steps):
            if not self.step():
                break
        return tracker

    # running

    def attempt(self, operation: Callable[[], T], default: Any = _UNSET) -> T:
        """
        Run the operation, retrying it until it succeeds or the attempts run out.

        Args:
            operation: Called with no arguments
            default: Returned instead of raising when every attempt failed (a callable is called to get it)

        Returns:
            The operation's result, or the default

        Raises:
            The last exception, when every attempt failed and no default applies
        """
        restore_start_of_loop = self._runs_at_start_of_loop
        self.reset()
        self._runs_at_start_of_loop = True
        try:
            return self._run(operation, default)
        finally:
            self.reset()
            self._runs_at_start_of_loop = restore_start_of_loop

    async def attempt_async(self, operation: Callable[[], Awaitable[T]], default: Any = _UNSET) -> T:
        """Async version of attempt(). The operation returns an awaitable."""
        restore_start_of_loop = self._runs_at_start_of_loop
        self.reset()
        self._runs_at_start_of_loop = True
        try:
            return await self._run_async(operation, default)
        finally:
            self.reset()
            self._runs_at_start_of_loop = restore_start_of_loop

    def _run(self, operation: Callable[[], T], default: Any) -> Any:
        verdict: Optional[_Verdict] = None
        result: Any = None
        error: Optional[Exception] = None

        while self.step():
            result, error = None, None
            self.start_of_attempt()
            try:
                result = operation()
            except Exception as exc:
                error = exc
                verdict = self._exception_verdict(exc)
                if verdict.stop:
                    break
                continue

            verdict = self._result_verdict(result)
            if verdict.succeeded:
                return result

        self._finish_failure()
        return self._resolve_default(self._failure_value(verdict, result, error, default))

    async def _run_async(self, operation: Callable[[], Awaitable[T]], default: Any) -> Any:
        verdict: Optional[_Verdict] = None
        result: Any = None
        error: Optional[Exception] = None

        while await self.step_async():
            result, error = None, None
            self.start_of_attempt()
            try:
                result = await operation()
            except Exception as exc:
                error = exc
                verdict = self._exception_verdict(exc)
                if verdict.stop:
                    break
                continue

            verdict = self._result_verdict(result)
            if verdict.succeeded:
                return result

        self._finish_failure()
        value = self._resolve_default(self._failure_value(verdict, result, error, default))
        if inspect.isawaitable(value):
            value = await value
        return value

    def _exception_verdict(self, exc: Exception) -> _Verdict:
        match = self._pick_matching_exception(exc)
        if match is None:
            verdict = _Verdict(
                succeeded=False,
                stop=True,
                fatal=True,
                override_default=self._has_exception_default,
                override_with=self._exception_default,
            )
        else:
            verdict = _Verdict(
                succeeded=False,
                stop=self.is_last_attempt(),
                override_default=match.has_default,
                override_with=match.default,
            )

        self.end_of_attempt(exception=exc, outcome=AttemptOutcome.EXCEPTION)
        logger.debug(
            f"{LOG_PREFIX} attempt {self.current_attempt_number()} raised {type(exc).__name__}, "
            f"retryable={not verdict.fatal} will_retry={not verdict.stop}"
        )
        self._call_callbacks(self._exception_callbacks, [
            Argument(("exception", "e", "error"), exc),
            *self._log_arguments(),
            Argument(("will_retry",), not verdict.stop),
        ])
        return verdict

    def _result_verdict(self, result: Any) -> _Verdict:
        verdict = _Verdict(succeeded=True)

        if self._retry_when_result:
            invalid = self._pick_matching_result(result, self._retry_when_result)
            if invalid is not None:
                verdict = _Verdict(
                    succeeded=False,
                    override_default=invalid.has_default,
                    override_with=invalid.default,
                )

        if self._retry_until_result:
            valid = self._pick_matching_result(result, self._retry_until_result)
            verdict = _Verdict(succeeded=valid is not None)

        if verdict.succeeded:
            self.end_of_attempt(result=result, outcome=AttemptOutcome.SUCCESS)
            self._call_callbacks(self._success_callbacks, [
                Argument(("result", "value"), result),
                *self._log_arguments(),
            ])
            self._call_callbacks(self._finally_callbacks, self._log_arguments(logs_first=True, final=True))
            return verdict

        self.end_of_attempt(result=result, outcome=AttemptOutcome.INVALID_RESULT)
        logger.debug(f"{LOG_PREFIX} attempt {self.current_attempt_number()} returned an invalid result")
        self._call_callbacks(self._invalid_result_callbacks, [
            Argument(("result", "value"), result),
            *self._log_arguments(),
            Argument(("will_retry",), not self.is_last_attempt()),
        ])
        return verdict

    def _finish_failure(self) -> None:
        logger.warning(f"{LOG_PREFIX} giving up after {len(self._logs)} attempt(s)")
        self._call_callbacks(self._failure_callbacks, self._log_arguments(logs_first=True, final=True))
        self._call_callbacks(self._finally_callbacks, self._log_arguments(logs_first=True, final=True))

    @staticmethod
    def _failure_value(verdict: Optional[_Verdict], result: Any, error: Optional[Exception], default: Any) -> Any:
        if verdict is not None and verdict.override_default:
            return verdict.override_with
        if verdict is not None and verdict.fatal and error is not None:
            raise error
        if default is not _UNSET:
            return default
        if error is not None:
            raise error
        return _Literal(result)

    @staticmethod
    def _resolve_default(value: Any) -> Any:
        if isinstance(value, _Literal):
            return value.value
        return value() if callable(value) else value

    # internals

    def _start(self) -> None:
        if not self._started:
            self._logs = []
            logger.debug(f"{LOG_PREFIX} starting, configuration is now frozen")
        self._started = True

    def _assess_initial_stopped_state(self) -> None:
        self._stopped = self._max_attempts is not None and self._max_attempts <= 0

    def _delay_calculator(self) -> DelayCalculator:
        if self._calculator is None:
            self._calculator = DelayCalculator(
                self._algorithm,
                self._jitter,
                max_retries=self._max_attempts - 1 if self._max_attempts is not None else None,
                max_delay=self._max_delay,
                unit=self._unit,
                immediate_first_retry=self._immediate_first_retry,
                delays_enabled=self._delays_enabled,
            )
        return self._calculator

    def _can_continue(self) -> bool:
        if not self._retries_enabled:
            return False
        return not self._delay_calculator().should_stop(self._attempt_index or 0)

    def _next_delay(self, index: int) -> Optional[Number]:
        if not self._retries_enabled:
            return None
        return self._delay_calculator().get_jittered_delay(index + 1)

    def _prepare_sleep(self) -> tuple[bool, Optional[float]]:
        self._start()
        if self._tracker is not None:
            self._tracker.sleep_call_count += 1

        if self._stopped:
            return False, None

        delay = self.get_delay()
        if self._tracker is not None:
            base_delay = self._delay_calculator().get_base_delay(self._attempt_index or 0)
            self._tracker.record(delay, base_delay, self._unit)

        # no delay before the first attempt
        if delay is None:
            return True, None

        self._overall_delay = (self._overall_delay or 0) + delay

        if self._tracker is not None:
            self._tracker.actual_times_slept += 1
            return True, None
        return True, self._unit.convert(delay, Unit.SECONDS)

    def _log_arguments(self, logs_first: bool = False, final: bool = False) -> list[Argument]:
        arguments = []
        log = self.current_log()
        if log is None and final and self._logs:
            # the loop may have stopped already, the run's last attempt is still its log
            log = self._logs[-1]
        if log is not None:
            arguments.append(Argument(("log", "attempt_log"), log))
        logs = Argument(("logs", "attempt_logs"), self.logs())
        return [logs, *arguments] if logs_first else [*arguments, logs]

    def _call_callbacks(self, callbacks: list[CallbackSpec], arguments: list[Argument]) -> None:
        if callbacks:
            dispatch(callbacks, arguments, _ARGUMENT_NAMES)

    def _pick_matching_exception(self, exc: Exception) -> Optional[_PossibleMatch]:
        # the caller has opted out of retrying exceptions
        if self._retry_exceptions is None:
            return None

        # nothing configured, retry every exception
        if not self._retry_exceptions:
            return _PossibleMatch()

        # most specific first: particular + default, all + default, particular, all
        for has_default in (True, False):
            for matching_everything in (False, True):
                for possible in self._retry_exceptions:
                    if possible.has_default != has_default:
                        continue
                    if possible.matches_everything != matching_everything:
                        continue
                    if possible.matches_everything:
                        return possible
                    if possible.predicate is not None:
                        if self._predicate_matches(possible.predicate, [
                            Argument(("exception", "e", "error"), exc),
                            *self._log_arguments(),
                        ]):
                            return possible
                    elif isinstance(exc, possible.value):
                        return possible
        return None

    def _pick_matching_result(self, result: Any, possibilities: list[_PossibleMatch]) -> Optional[_PossibleMatch]:
        for possible in possibilities:
            if possible.predicate is not None:
                if self._predicate_matches(possible.predicate, [
                    Argument(("result", "value"), result),
                    *self._log_arguments(),
                ]):
                    return possible
            elif possible.strict:
                if result is possible.value or (type(result) is type(possible.value) and result == possible.value):
                    return possible
            elif result == possible.value:
                return possible
        return None

    @staticmethod
    def _predicate_matches(predicate: CallbackSpec, arguments: list[Argument]) -> bool:
        called, value = call_if_possible(predicate, arguments, _ARGUMENT_NAMES)
        return called and bool(value)

    @staticmethod
    def _exception_match(value: Any, has_default: bool, default: Any) -> _PossibleMatch:
        if isinstance(value, type) and issubclass(value, BaseException):
            return _PossibleMatch(value=value, has_default=has_default, default=default if has_default else None)
        if callable(value):
            return _PossibleMatch(
                value=value,
                has_default=has_default,
                default=default if has_default else None,
                predicate=CallbackSpec.from_callable(value),
            )
        raise BackoffInitialisationError.invalid_callback(value)

    @staticmethod
    def _result_match(match: Any, strict: bool, has_default: bool, default: Any) -> _PossibleMatch:
        predicate = CallbackSpec.from_callable(match) if callable(match) else None
        return _PossibleMatch(
            value=match,
            has_default=has_default,
            default=default if has_default else None,
            strict=strict,
            predicate=predicate,
        )


def create_backoff(
    algorithm: BackoffAlgorithm,
    config: Optional[BackoffConfig] = None,
    **kwargs: Any,
) -> Backoff:
    """
    Factory function to create a Backoff.

    Args:
        algorithm: The backoff algorithm to use
        config: Engine configuration (default: DEFAULT_BACKOFF_CONFIG)
        **kwargs: sleeper, async_sleeper or rng. Anything else overrides a config field

    Returns:
        Configured Backoff
    """
    return Backoff.from_config(algorithm, config, **kwargs)


@dataclass(frozen=True)
class _Literal:
    """Wraps a value that is returned as-is, even when it's callable"""

    value: Any


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _flatten(values: Sequence[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(_flatten(value))
        else:
            flat.append(value)
    return flat


def _specs(callbacks: Sequence[Any]) -> list[CallbackSpec]:
    return [CallbackSpec.from_callable(callback) for callback in flatten_callbacks(*callbacks)]
