"""
Type definitions for retry_backoff
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import BackoffInitialisationError


Number = Union[int, float]

JitterType = Literal["none", "full", "equal", "range"]


class Unit(str, Enum):
    """Unit of measurement used for delays"""
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    MICROSECONDS = "microseconds"

    @classmethod
    def parse(cls, value: Union["Unit", str]) -> "Unit":
        """
        Resolve a unit token.

        Raises:
            BackoffInitialisationError: When the token isn't a known unit
        """
        if isinstance(value, Unit):
            return value
        try:
            return cls(value)
        except ValueError:
            raise BackoffInitialisationError.invalid_unit_type(value) from None

    @property
    def per_second(self) -> int:
        """How many of this unit make up one second"""
        return _PER_SECOND[self]

    def convert(self, value: Optional[Number], to: "Unit") -> Optional[Number]:
        """Convert a value expressed in this unit into another unit."""
        if value is None:
            return None
        if to is self:
            return value
        if self.per_second < to.per_second:
            return value * (to.per_second // self.per_second)
        return value / (self.per_second // to.per_second)


_PER_SECOND = {
    Unit.SECONDS: 1,
    Unit.MILLISECONDS: 1_000,
    Unit.MICROSECONDS: 1_000_000,
}


class AttemptOutcome(str, Enum):
    """How an attempt ended"""
    PENDING = "pending"
    SUCCESS = "success"
    EXCEPTION = "exception"
    INVALID_RESULT = "invalid_result"


@dataclass(frozen=True)
class AttemptLog:
    """Snapshot of a single attempt. Delays and times are expressed in `unit`."""

    attempt_number: int
    """The attempt this log is for, starting at 1"""

    max_attempts: Optional[int]
    """The max-attempts setting in effect (None for no limit)"""

    first_attempt_occurred_at: datetime
    """When the first attempt of the run started"""

    this_attempt_occurred_at: datetime
    """When this attempt started"""

    working_time: Optional[Number] = None
    """How long this attempt took (None while the attempt is open)"""

    overall_working_time: Optional[Number] = None
    """Working time of this and every earlier attempt"""

    prev_delay: Optional[Number] = None
    """The delay applied before this attempt"""

    next_delay: Optional[Number] = None
    """The delay that will be applied before the next attempt (None when there isn't one)"""

    overall_delay: Optional[Number] = None
    """Sum of the delays applied so far"""

    unit: Unit = Unit.SECONDS
    """The unit the delays and times are expressed in"""

    outcome: AttemptOutcome = AttemptOutcome.PENDING
    """How the attempt ended"""

    result: Any = None
    """The value the operation returned (success or invalid result)"""

    exception: Optional[BaseException] = None
    """The exception the operation raised"""

    @property
    def retry_number(self) -> int:
        return self.attempt_number - 1

    @property
    def will_retry(self) -> bool:
        return self.next_delay is not None

    @property
    def is_open(self) -> bool:
        return self.working_time is None

    def in_unit(self, name: str, unit: Union[Unit, str]) -> Optional[Number]:
        """
        Read one of the time based fields converted into another unit.

        Args:
            name: working_time, overall_working_time, prev_delay, next_delay or overall_delay
            unit: The unit to convert into
        """
        if name not in _CONVERTIBLE_FIELDS:
            raise AttributeError(f"{name} is not a time based field of AttemptLog")
        return self.unit.convert(getattr(self, name), Unit.parse(unit))

    def prev_delay_in_seconds(self) -> Optional[Number]:
        return self.in_unit("prev_delay", Unit.SECONDS)

    def prev_delay_in_ms(self) -> Optional[Number]:
        return self.in_unit("prev_delay", Unit.MILLISECONDS)

    def prev_delay_in_us(self) -> Optional[Number]:
        return self.in_unit("prev_delay", Unit.MICROSECONDS)

    def next_delay_in_seconds(self) -> Optional[Number]:
        return self.in_unit("next_delay", Unit.SECONDS)

    def next_delay_in_ms(self) -> Optional[Number]:
        return self.in_unit("next_delay", Unit.MILLISECONDS)

    def next_delay_in_us(self) -> Optional[Number]:
        return self.in_unit("next_delay", Unit.MICROSECONDS)

    def working_time_in_seconds(self) -> Optional[Number]:
        return self.in_unit("working_time", Unit.SECONDS)

    def overall_delay_in_seconds(self) -> Optional[Number]:
        return self.in_unit("overall_delay", Unit.SECONDS)


_CONVERTIBLE_FIELDS = frozenset({
    "working_time",
    "overall_working_time",
    "prev_delay",
    "next_delay",
    "overall_delay",
})


@dataclass
class DelayTracker:
    """Delays recorded while generating a test sequence"""

    delays: list[Optional[Number]] = field(default_factory=list)
    """Jittered delays in the configured unit"""

    delays_in_seconds: list[Optional[Number]] = field(default_factory=list)
    delays_in_ms: list[Optional[Number]] = field(default_factory=list)
    delays_in_us: list[Optional[Number]] = field(default_factory=list)

    base_delays: list[Optional[Number]] = field(default_factory=list)
    """Base delays (before jitter) in the configured unit"""

    sleep_call_count: int = 0
    """Number of times sleep() was reached"""

    actual_times_slept: int = 0
    """Number of times a delay would actually have been waited"""

    def record(self, delay: Optional[Number], base_delay: Optional[Number], unit: Unit) -> None:
        self.delays.append(delay)
        self.base_delays.append(base_delay)
        self.delays_in_seconds.append(unit.convert(delay, Unit.SECONDS))
        self.delays_in_ms.append(unit.convert(delay, Unit.MILLISECONDS))
        self.delays_in_us.append(unit.convert(delay, Unit.MICROSECONDS))


class BackoffConfig(BaseModel):
    """Engine settings that can be loaded from static configuration"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: Optional[int] = Field(default=None, ge=0)
    """Maximum number of attempts, including the first. Default: None (no limit)"""

    max_delay: Optional[float] = Field(default=None, ge=0)
    """Upper bound applied to base delays. Default: None (no bound)"""

    unit: Unit = Unit.SECONDS
    """Unit the delays are expressed in. Default: seconds"""

    jitter: JitterType = "full"
    """Jitter to apply. Default: full"""

    jitter_min: float = Field(default=0.0, ge=0)
    """Lower factor for range jitter"""

    jitter_max: float = Field(default=1.0, ge=0)
    """Upper factor for range jitter"""

    runs_at_start_of_loop: bool = False
    immediate_first_retry: bool = False
    delays_enabled: bool = True
    retries_enabled: bool = True
