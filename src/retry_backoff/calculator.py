"""
Delay calculator.

Combines a backoff algorithm, an optional jitter and the bounds/timing options
into per-attempt delays. Index 0 is the first attempt (nothing precedes it),
index n is the n-th retry. Every value is cached, so asking for the same index
again returns exactly the same number until reset() is called.
"""
import logging
import math
from typing import Optional, Union

from .algorithms import BackoffAlgorithm
from .jitter import Jitter
from .types import Number, Unit

logger = logging.getLogger(__name__)

LOG_PREFIX = "[retry_backoff.calculator]"


class DelayCalculator:
    """
    Calculates (and caches) base and jittered delays.

    Example:
        calculator = DelayCalculator(LinearBackoffAlgorithm(5, 10), max_retries=3)
        calculator.get_base_delay(1)  # 5
        calculator.get_base_delay(4)  # None
    """

    def __init__(
        self,
        algorithm: BackoffAlgorithm,
        jitter: Optional[Jitter] = None,
        max_retries: Optional[int] = None,
        max_delay: Optional[Number] = None,
        unit: Union[Unit, str] = Unit.SECONDS,
        immediate_first_retry: bool = False,
        delays_enabled: bool = True,
    ) -> None:
        """
        Create a new DelayCalculator.

        Args:
            algorithm: The backoff algorithm to use
            jitter: The jitter to apply (None for no jitter)
            max_retries: Maximum number of retries (None for no limit)
            max_delay: Upper bound for base delays (None for no bound)
            unit: Unit the delays are expressed in
            immediate_first_retry: Whether the first retry happens with no delay
            delays_enabled: When False, every delay becomes 0

        Raises:
            BackoffInitialisationError: When unit is invalid
        """
        self._algorithm = algorithm
        self._jitter = jitter
        self._max_retries = max_retries
        self._max_delay = max_delay
        self._unit = Unit.parse(unit)
        self._immediate_first_retry = immediate_first_retry
        self._delays_enabled = delays_enabled

        self._base_delays: dict[int, Optional[Number]] = {}
        self._jittered_delays: dict[int, Optional[Number]] = {}

    @property
    def unit(self) -> Unit:
        return self._unit

    @property
    def algorithm(self) -> BackoffAlgorithm:
        return self._algorithm

    @property
    def jitter(self) -> Optional[Jitter]:
        return self._jitter

    def reset(self) -> "DelayCalculator":
        """Forget the cached delays, so new (random) values are generated."""
        self._base_delays = {}
        self._jittered_delays = {}
        return self

    def get_base_delay(self, index: int) -> Optional[Number]:
        """
        Get the base delay applied before the given attempt.

        Args:
            index: 0 for the first attempt, n for the n-th retry

        Returns:
            The bounded delay, or None when no attempt should happen
        """
        if index in self._base_delays:
            return self._base_delays[index]

        if index <= 0:
            self._base_delays[index] = None
            return None

        # each delay depends on the previous one, fill the gap from the lowest missing index upwards
        first_missing = index
        while first_missing > 1 and (first_missing - 1) not in self._base_delays:
            first_missing -= 1

        for current in range(first_missing, index + 1):
            delay = self._enforce_bounds(self._calculate_base_delay(current))
            self._base_delays[current] = delay
            logger.debug(f"{LOG_PREFIX} get_base_delay: index={current} delay={delay}")

        return self._base_delays[index]

    def get_jittered_delay(self, index: int) -> Optional[Number]:
        """
        Get the base delay with jitter applied, for the given attempt.

        Args:
            index: 0 for the first attempt, n for the n-th retry

        Returns:
            The delay to wait, or None when no attempt should happen
        """
        if index in self._jittered_delays:
            return self._jittered_delays[index]

        delay = self._apply_jitter(self.get_base_delay(index), index)
        if delay is not None:
            delay = max(0, delay)
        self._jittered_delays[index] = delay
        return delay

    def should_stop(self, index: int) -> bool:
        """Whether the given attempt shouldn't happen."""
        if index <= 0:
            return False
        return self.get_base_delay(index) is None

    def _calculate_base_delay(self, index: int) -> Optional[Number]:
        # still calculated when delays are disabled, to find out when the algorithm stops
        delay = self._calculate_algorithm_delay(index)
        if delay is None:
            return None
        return delay if self._delays_enabled else 0

    def _calculate_algorithm_delay(self, index: int) -> Optional[Number]:
        if index <= 0:
            return None

        if self._max_retries is not None and index > self._max_retries:
            return None

        prev_base_delay = self.get_base_delay(index - 1)
        if index > 1 and prev_base_delay is None:
            return None

        retry_number = index
        if self._immediate_first_retry:
            if index == 1:
                return 0
            retry_number -= 1
            if retry_number == 1:
                # the inserted 0 isn't part of the algorithm's own chain
                prev_base_delay = None

        return self._algorithm.calculate_base_delay(retry_number, prev_base_delay)

    def _apply_jitter(self, delay: Optional[Number], index: int) -> Optional[Number]:
        if delay is None:
            return None
        if self._jitter is None or not self._algorithm.jitter_may_be_applied:
            return delay
        if delay <= 0:
            return delay
        return self._jitter.apply(delay, index)

    def _enforce_bounds(self, delay: Optional[Number]) -> Optional[Number]:
        if delay is None:
            return None
        if isinstance(delay, float) and math.isnan(delay):
            return 0
        if self._max_delay is not None:
            delay = min(delay, self._max_delay)
        return max(0, delay)
