"""
Backoff algorithms.

Each algorithm maps a retry number (starting at 1) and the previous base delay
to the next base delay, or to None when retrying should stop. Algorithms hold
no state beyond their constructor arguments, so asking for the same retry
number twice is safe.
"""
import math
import random
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, Union

from .errors import BackoffInitialisationError, BackoffRuntimeError


Number = Union[int, float]

DelayCallback = Callable[[int, Optional[Number]], Optional[Number]]


def rand_float(rng: Union[random.Random, None], min_value: Number, max_value: Number) -> Optional[float]:
    """Uniform float in [min_value, max_value], or None when the range is inverted."""
    if min_value > max_value:
        return None
    source = rng if rng is not None else random
    return source.uniform(min_value, max_value)


class BackoffAlgorithm(ABC):
    """Interface for retry backoff algorithms"""

    jitter_may_be_applied: bool = True
    """Whether jitter may be layered on top of this algorithm's delays"""

    @abstractmethod
    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        """
        Calculate the delay needed before a retry.

        Args:
            retry_number: The retry being attempted, starting at 1
            prev_base_delay: The previous base delay (if any)

        Returns:
            The delay, or None to stop retrying
        """
        pass

    def generate_test_sequence(self, max_steps: int) -> list[Optional[Number]]:
        """Run through the sequence and report the generated delays."""
        delays: list[Optional[Number]] = []
        prev_delay = None
        for retry_number in range(1, max_steps + 1):
            prev_delay = self.calculate_base_delay(retry_number, prev_delay)
            delays.append(prev_delay)
        return delays


class FixedBackoffAlgorithm(BackoffAlgorithm):
    """The same delay every time"""

    def __init__(self, delay: Number) -> None:
        self._delay = delay

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        return self._delay


class LinearBackoffAlgorithm(BackoffAlgorithm):
    """Delays growing by a fixed increase: first + (n - 1) * increase"""

    def __init__(self, initial_delay: Number, delay_increase: Optional[Number] = None) -> None:
        self._initial_delay = initial_delay
        self._delay_increase = delay_increase

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        increase = self._delay_increase if self._delay_increase is not None else self._initial_delay
        return self._initial_delay + ((retry_number - 1) * increase)


class ExponentialBackoffAlgorithm(BackoffAlgorithm):
    """Delays multiplied by a factor each retry: first * factor ** (n - 1)"""

    def __init__(self, initial_delay: Number, factor: Number = 2) -> None:
        self._initial_delay = initial_delay
        self._factor = factor

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        try:
            return self._initial_delay * (self._factor ** (retry_number - 1))
        except OverflowError:
            return math.inf


class PolynomialBackoffAlgorithm(BackoffAlgorithm):
    """Delays following a power curve: first * n ** power"""

    def __init__(self, initial_delay: Number, power: Number = 2) -> None:
        self._initial_delay = initial_delay
        self._power = power

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        try:
            return self._initial_delay * (retry_number ** self._power)
        except OverflowError:
            return math.inf


class FibonacciBackoffAlgorithm(BackoffAlgorithm):
    """
    Delays following the Fibonacci sequence, scaled so it starts at initial_delay.

    include_first=True gives [d, d, 2d, 3d, 5d, ...]
    include_first=False gives [d, 2d, 3d, 5d, 8d, ...]
    """

    def __init__(self, initial_delay: Number, include_first: bool = True) -> None:
        self._initial_delay = initial_delay
        self._include_first = include_first

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        delay: Number = 0
        next_delay: Number = self._initial_delay
        steps = retry_number if self._include_first else retry_number + 1
        for _ in range(steps):
            delay, next_delay = next_delay, next_delay + delay
        return delay


class DecorrelatedBackoffAlgorithm(BackoffAlgorithm):
    """
    "Decorrelated jitter": random between the base delay and the previous delay * multiplier.

    The randomness is part of the algorithm, so no jitter is layered on top.
    """

    jitter_may_be_applied = False

    def __init__(self, base_delay: Number, multiplier: Number = 3, rng: Optional[random.Random] = None) -> None:
        self._base_delay = base_delay
        self._multiplier = multiplier
        self._rng = rng

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        min_delay = self._base_delay
        max_delay = (prev_base_delay if prev_base_delay is not None else self._base_delay) * self._multiplier
        delay = rand_float(self._rng, min_delay, max_delay)
        # previous delay * multiplier can fall below the base (e.g. a clamped 0)
        return max(min_delay, delay) if delay is not None else min_delay


class RandomBackoffAlgorithm(BackoffAlgorithm):
    """Random delays between min_delay and max_delay. No jitter is layered on top."""

    jitter_may_be_applied = False

    def __init__(self, min_delay: Number, max_delay: Number, rng: Optional[random.Random] = None) -> None:
        if min_delay > max_delay:
            raise BackoffInitialisationError.rand_min_is_greater_than_max(min_delay, max_delay)
        self._min_delay = max(0, min_delay)
        self._max_delay = max(0, max_delay)
        self._rng = rng

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        return rand_float(self._rng, self._min_delay, self._max_delay)


class SequenceBackoffAlgorithm(BackoffAlgorithm):
    """
    Delays taken from a predefined list.

    A None inside the list ends the sequence there. Once the list runs out,
    retrying stops unless repeat_last is set: True repeats the final delay,
    a number repeats that number instead.
    """

    def __init__(self, delays: Sequence[Optional[Number]], repeat_last: Union[bool, Number] = False) -> None:
        usable: list[Number] = []
        for delay in delays:
            if delay is None:
                break
            usable.append(delay)
        self._delays = tuple(usable)
        self._repeat_last = repeat_last

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        index = retry_number - 1
        if 0 <= index < len(self._delays):
            return self._delays[index]

        if self._repeat_last is False:
            return None
        if self._repeat_last is True:
            return self._delays[-1] if self._delays else None
        return self._repeat_last


class CallbackBackoffAlgorithm(BackoffAlgorithm):
    """Delays worked out by a callback: callback(retry_number, prev_base_delay)"""

    def __init__(self, callback: DelayCallback) -> None:
        self._callback = callback

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        delay = self._callback(retry_number, prev_base_delay)
        if delay is None:
            return None
        if isinstance(delay, bool) or not isinstance(delay, (int, float)):
            raise BackoffRuntimeError.callback_algorithm_gave_invalid_return_value(delay)
        return delay


class NoopBackoffAlgorithm(BackoffAlgorithm):
    """No delay, and never stops by itself"""

    jitter_may_be_applied = False

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        return 0


class NoBackoffAlgorithm(BackoffAlgorithm):
    """Stops straight away, so only the first attempt is made"""

    jitter_may_be_applied = False

    def calculate_base_delay(self, retry_number: int, prev_base_delay: Optional[Number]) -> Optional[Number]:
        return None
