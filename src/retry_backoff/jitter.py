"""
Jitter strategies, applied to base delays to spread retries out
"""
import random
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from .algorithms import rand_float
from .errors import BackoffInitialisationError


Number = Union[int, float]

JitterCallback = Callable[[Number, int], Number]


class Jitter(ABC):
    """Interface for jitter strategies"""

    @abstractmethod
    def apply(self, delay: Number, retry_number: int) -> Number:
        """
        Apply jitter to a delay.

        Args:
            delay: The base delay, always greater than 0
            retry_number: The retry being attempted, starting at 1

        Returns:
            The jittered delay
        """
        pass


class RangeJitter(Jitter):
    """Random delay between delay * min_factor and delay * max_factor"""

    min_factor: Number = 0
    max_factor: Number = 1

    def __init__(
        self,
        min_factor: Optional[Number] = None,
        max_factor: Optional[Number] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        min_factor = self.min_factor if min_factor is None else min_factor
        max_factor = self.max_factor if max_factor is None else max_factor
        if min_factor > max_factor:
            raise BackoffInitialisationError.rand_min_is_greater_than_max(min_factor, max_factor)
        self.min_factor = max(0, min_factor)
        self.max_factor = max(0, max_factor)
        self._rng = rng

    def apply(self, delay: Number, retry_number: int) -> Number:
        jittered = rand_float(self._rng, self.min_factor * delay, self.max_factor * delay)
        return jittered if jittered is not None else 0


class FullJitter(RangeJitter):
    """Random delay between 0 and the delay"""

    min_factor = 0
    max_factor = 1

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        super().__init__(rng=rng)


class EqualJitter(RangeJitter):
    """Random delay between half the delay and the delay"""

    min_factor = 0.5
    max_factor = 1

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        super().__init__(rng=rng)


class CallbackJitter(Jitter):
    """Jitter worked out by a callback: callback(delay, retry_number)"""

    def __init__(self, callback: JitterCallback) -> None:
        self._callback = callback

    def apply(self, delay: Number, retry_number: int) -> Number:
        jittered = self._callback(delay, retry_number)
        if isinstance(jittered, bool) or not isinstance(jittered, (int, float)):
            return delay
        return jittered
