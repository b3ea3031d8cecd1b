"""
Tests for the retry_backoff Backoff engine.

Test coverage includes:
- Delay sequences for each factory
- Loop testing: zero, one and many iterations
- State transition testing: unstarted, running, stopped
- Attempt logs
- Configuration freezing, reset and simulation
"""

import random

import pytest
from unittest.mock import AsyncMock, MagicMock, call

from retry_backoff import (
    AttemptOutcome,
    Backoff,
    BackoffConfig,
    BackoffInitialisationError,
    BackoffRuntimeError,
    FixedBackoffAlgorithm,
    Unit,
    create_backoff,
)


def delays(backoff: Backoff, max_steps: int = 20) -> list:
    return backoff.generate_test_sequence(max_steps).delays


class TestFactories:
    """Tests for the factory classmethods."""

    @pytest.mark.parametrize("backoff,expected", [
        (Backoff.fixed(5).max_attempts(4), [5, 5, 5]),
        (Backoff.linear(5, 10).max_attempts(4), [5, 15, 25]),
        (Backoff.exponential(1).max_attempts(5), [1, 2, 4, 8]),
        (Backoff.polynomial(1).max_attempts(4), [1, 4, 9]),
        (Backoff.fibonacci(1).max_attempts(6), [1, 1, 2, 3, 5]),
        (Backoff.sequence([9, 8, 7]), [9, 8, 7]),
        (Backoff.callback(lambda retry, prev: retry if retry < 4 else None), [1, 2, 3]),
        (Backoff.custom(FixedBackoffAlgorithm(2)).max_attempts(3), [2, 2]),
        (Backoff.noop().max_attempts(3), [0, 0]),
        (Backoff.none(), []),
    ])
    def test_generates_expected_delays(self, backoff, expected):
        """Should generate the expected delays."""
        assert delays(backoff.no_jitter()) == expected

    @pytest.mark.parametrize("backoff,expected", [
        (Backoff.fixed(5).max_attempts(11), [5] * 10),
        (Backoff.linear(5, 10), [5, 15, 25, 35, 45, 55, 65, 75, 85, 95]),
    ])
    def test_ten_retries(self, backoff, expected):
        """Should keep to the algorithm over ten retries."""
        assert delays(backoff.no_jitter(), 10) == expected

    def test_sequence_repeats_last_delay(self):
        """Should keep repeating the last delay."""
        backoff = Backoff.sequence([9, 8, 7, 6, 5], repeat_last=True).no_jitter()
        assert delays(backoff, 10) == [9, 8, 7, 6, 5, 5, 5, 5, 5, 5]

    def test_factories_apply_full_jitter(self):
        """Should apply full jitter by default."""
        backoff = Backoff.fixed(10, rng=random.Random(5)).max_attempts(30)
        generated = delays(backoff, 40)
        assert len(generated) == 29
        assert all(0 <= delay <= 10 for delay in generated)
        assert len(set(generated)) > 1

    def test_random_and_decorrelated_stay_in_range(self):
        """Should keep randomised delays within their bounds."""
        assert all(2 <= d <= 4 for d in delays(Backoff.random(2, 4, rng=random.Random(1)).max_attempts(10)))
        assert all(d >= 1 for d in delays(Backoff.decorrelated(1, rng=random.Random(1)).max_attempts(10)))

    def test_accepts_unit(self):
        """Should accept the unit delays are expressed in."""
        backoff = Backoff.fixed(200, unit="milliseconds").no_jitter().max_attempts(3)
        tracker = backoff.generate_test_sequence(5)
        assert backoff.get_unit() == Unit.MILLISECONDS
        assert tracker.delays == [200, 200]
        assert tracker.delays_in_seconds == [0.2, 0.2]
        assert tracker.delays_in_us == [200_000, 200_000]

    def test_rejects_unknown_unit(self):
        """Should raise for an unknown unit."""
        with pytest.raises(BackoffInitialisationError):
            Backoff.fixed(1, unit="days")


class TestBounds:
    """Tests for max attempts and max delay."""

    def test_max_delay_caps_and_floors(self):
        """Should cap delays at max delay and floor negative ones at 0."""
        backoff = Backoff.sequence([1, -1.5, 4, -8]).no_jitter().max_delay(3)
        assert delays(backoff) == [1, 0, 3, 0]

    def test_no_max_delay(self):
        """Should remove a previously set max delay."""
        backoff = Backoff.fixed(10).no_jitter().max_delay(3).no_max_delay().max_attempts(2)
        assert delays(backoff) == [10]

    def test_zero_max_attempts_starts_stopped(self):
        """Should start stopped when max attempts is 0."""
        backoff = Backoff.fixed(1).max_attempts(0)
        assert backoff.has_stopped() is True
        assert backoff.step() is False

    def test_no_attempt_limit(self):
        """Should keep going when the limit is removed."""
        backoff = Backoff.fixed(1).no_jitter().max_attempts(2).no_attempt_limit()
        assert delays(backoff, 50) == [1] * 50


class TestLoop:
    """Tests for driving the loop with step()."""

    @pytest.mark.parametrize("max_attempts,expected", [(0, 0), (1, 1), (5, 5)])
    def test_runs_at_start_of_loop(self, max_attempts, expected):
        """Should give one iteration per attempt when stepping at the start of the loop."""
        sleeper = MagicMock()
        backoff = Backoff(FixedBackoffAlgorithm(1), max_attempts=max_attempts, sleeper=sleeper)
        backoff.runs_at_start_of_loop()

        iterations = 0
        while backoff.step():
            iterations += 1

        assert iterations == expected
        assert sleeper.call_count == max(0, expected - 1)

    def test_sleeps_in_seconds(self):
        """Should hand the sleeper the delay in seconds."""
        sleeper = MagicMock()
        backoff = Backoff(
            FixedBackoffAlgorithm(200), max_attempts=3, unit=Unit.MILLISECONDS,
            runs_at_start_of_loop=True, sleeper=sleeper,
        )
        while backoff.step():
            pass
        assert sleeper.call_args_list == [call(0.2), call(0.2)]

    def test_start_of_loop_adds_leading_empty_delay(self):
        """Should record no delay for the first iteration."""
        tracker = Backoff.fixed(5).no_jitter().max_attempts(4).runs_at_start_of_loop().generate_test_sequence(10)
        assert tracker.delays == [None, 5, 5, 5]
        assert tracker.sleep_call_count == 5
        assert tracker.actual_times_slept == 3

    def test_end_of_loop_counts(self):
        """Should count sleep calls and actual sleeps."""
        tracker = Backoff.fixed(5).no_jitter().max_attempts(4).generate_test_sequence(10)
        assert tracker.delays == [5, 5, 5]
        assert tracker.base_delays == [5, 5, 5]
        assert tracker.sleep_call_count == 4
        assert tracker.actual_times_slept == 3

    def test_only_retry_when_false(self):
        """Should only allow the first attempt."""
        backoff = Backoff.fixed(1).max_attempts(5).runs_at_start_of_loop().only_retry_when(False)
        assert backoff.step() is True
        assert backoff.step() is False

    def test_only_delay_when_false(self):
        """Should zero the delays without changing when it stops."""
        backoff = Backoff.fixed(5).max_attempts(3).only_delay_when(False)
        assert delays(backoff) == [0, 0]

    def test_immediate_first_retry(self):
        """Should insert a 0 delay as the first retry."""
        backoff = Backoff.linear(5, 10).no_jitter().immediate_first_retry().max_attempts(5)
        assert delays(backoff) == [0, 5, 15, 25]

    def test_no_immediate_first_retry(self):
        """Should undo immediate_first_retry()."""
        backoff = Backoff.linear(5, 10).no_jitter().immediate_first_retry().no_immediate_first_retry()
        assert delays(backoff.max_attempts(3)) == [5, 15]

    @pytest.mark.asyncio
    async def test_step_async(self):
        """Should await the async sleeper."""
        sleeper = AsyncMock()
        backoff = Backoff(FixedBackoffAlgorithm(0.5), max_attempts=3, async_sleeper=sleeper)

        iterations = 0
        while await backoff.step_async():
            iterations += 1

        assert iterations == 2
        assert sleeper.await_args_list == [call(0.5), call(0.5)]


class TestAttemptLogs:
    """Tests for attempt logging."""

    def run_loop(self, backoff: Backoff) -> list:
        seen = []
        while backoff.step():
            backoff.start_of_attempt()
            log = backoff.current_log()
            seen.append((log.attempt_number, log.prev_delay, log.next_delay, backoff.is_last_attempt()))
            backoff.end_of_attempt(result="x")
        return seen

    def test_records_each_attempt(self):
        """Should open and close a log for each attempt."""
        backoff = Backoff(FixedBackoffAlgorithm(2), max_attempts=3, runs_at_start_of_loop=True, sleeper=MagicMock())

        seen = self.run_loop(backoff)

        assert seen == [(1, None, 2, False), (2, 2, 2, False), (3, 2, None, True)]
        logs = backoff.logs()
        assert [log.attempt_number for log in logs] == [1, 2, 3]
        assert all(log.outcome == AttemptOutcome.SUCCESS for log in logs)
        assert all(log.result == "x" for log in logs)
        assert all(log.working_time is not None for log in logs)
        assert logs[0].overall_delay is None
        assert logs[2].overall_delay == 4
        assert logs[2].overall_working_time >= logs[0].working_time
        assert logs[0].first_attempt_occurred_at == logs[2].first_attempt_occurred_at
        assert backoff.current_log() is None
        assert backoff.has_stopped() is True

    def test_logs_are_immutable_snapshots(self):
        """Should replace the open log when closing it, leaving earlier references untouched."""
        backoff = Backoff(FixedBackoffAlgorithm(1), runs_at_start_of_loop=True)
        backoff.step()
        backoff.start_of_attempt()
        open_log = backoff.current_log()
        backoff.end_of_attempt(exception=ValueError("boom"))

        assert open_log.is_open is True
        closed = backoff.current_log()
        assert closed.is_open is False
        assert closed.outcome == AttemptOutcome.EXCEPTION
        assert isinstance(closed.exception, ValueError)

    def test_end_of_attempt_twice_keeps_first(self):
        """Should ignore a second end_of_attempt() for the same attempt."""
        backoff = Backoff(FixedBackoffAlgorithm(1), runs_at_start_of_loop=True)
        backoff.step()
        backoff.start_of_attempt()
        backoff.end_of_attempt(result=1)
        first = backoff.current_log()
        backoff.end_of_attempt(result=2)
        assert backoff.current_log() is first

    def test_end_of_attempt_without_start(self):
        """Should raise when no attempt has been started."""
        with pytest.raises(BackoffRuntimeError):
            Backoff.fixed(1).end_of_attempt()

    def test_start_of_attempt_after_stopping(self):
        """Should raise when the backoff has stopped."""
        with pytest.raises(BackoffRuntimeError):
            Backoff.fixed(1).max_attempts(0).start_of_attempt()

    def test_first_attempt_flags(self):
        """Should report the first attempt."""
        backoff = Backoff.fixed(1).max_attempts(2)
        assert backoff.current_attempt_number() == 1
        assert backoff.is_first_attempt() is True
        assert backoff.is_last_attempt() is False


class TestDelays:
    """Tests for reading the current delay."""

    def test_get_delay_in_units(self):
        """Should report the current delay in each unit."""
        backoff = Backoff.fixed(2).no_jitter()
        assert backoff.calculate() is True
        assert backoff.get_delay() == 2
        assert backoff.get_delay_in_seconds() == 2
        assert backoff.get_delay_in_ms() == 2000
        assert backoff.get_delay_in_us() == 2_000_000

    def test_no_delay_once_stopped(self):
        """Should give no delay once stopped."""
        backoff = Backoff.fixed(2).max_attempts(1)
        assert backoff.calculate() is False
        assert backoff.get_delay() is None


class TestConfiguration:
    """Tests for configuration freezing and reset."""

    def test_rejects_changes_after_start(self):
        """Should name the method called after starting."""
        backoff = Backoff.fixed(1).max_attempts(3)
        backoff.calculate()
        with pytest.raises(BackoffRuntimeError, match='"max_attempts"'):
            backoff.max_attempts(5)
        with pytest.raises(RuntimeError, match='"full_jitter"'):
            backoff.full_jitter()

    def test_reset_allows_changes_and_reruns(self):
        """Should allow reconfiguring and running again after reset."""
        backoff = Backoff.fixed(1).no_jitter().max_attempts(3)
        assert delays(backoff) == [1, 1]

        backoff.reset().max_attempts(2)
        assert delays(backoff) == [1]

    def test_jitter_setters(self):
        """Should switch between jitter strategies."""
        backoff = Backoff.fixed(10).max_attempts(2).jitter_callback(lambda delay, retry: delay / 5)
        assert delays(backoff) == [2]

        backoff = Backoff.fixed(10, rng=random.Random(2)).max_attempts(20).equal_jitter()
        assert all(5 <= d <= 10 for d in delays(backoff))

        backoff = Backoff.fixed(10, rng=random.Random(2)).max_attempts(20).jitter_range(1, 2)
        assert all(10 <= d <= 20 for d in delays(backoff))

    def test_unit_setters(self):
        """Should switch units."""
        assert Backoff.fixed(1).unit_ms().get_unit() == Unit.MILLISECONDS
        assert Backoff.fixed(1).unit_us().get_unit() == Unit.MICROSECONDS
        assert Backoff.fixed(1).unit_ms().unit_seconds().get_unit() == Unit.SECONDS
        assert Backoff.fixed(1).unit("microseconds").get_unit() == Unit.MICROSECONDS

    def test_from_config(self):
        """Should build a backoff from static configuration."""
        config = BackoffConfig(max_attempts=3, jitter="none", unit="milliseconds")
        backoff = Backoff.from_config(FixedBackoffAlgorithm(100), config)
        assert backoff.get_unit() == Unit.MILLISECONDS
        assert delays(backoff) == [100, 100]

    def test_from_config_range_jitter(self):
        """Should build range jitter from the configured factors."""
        config = BackoffConfig(max_attempts=2, jitter="range", jitter_min=0.5, jitter_max=0.5)
        assert delays(create_backoff(FixedBackoffAlgorithm(4), config)) == [2]

    def test_from_config_overrides(self):
        """Should let keyword arguments override config fields, and pass the rest to the backoff."""
        sleeper = MagicMock()
        config = BackoffConfig(max_attempts=5, jitter="none")
        backoff = create_backoff(FixedBackoffAlgorithm(4), config, max_attempts=2, sleeper=sleeper)

        assert delays(backoff) == [4]
        backoff.reset()
        while backoff.step():
            pass
        sleeper.assert_called_once_with(4)

    def test_from_config_rejects_unknown_override(self):
        """Should raise BackoffInitialisationError for an unknown keyword."""
        with pytest.raises(BackoffInitialisationError):
            Backoff.from_config(FixedBackoffAlgorithm(4), max_tries=2)


class TestSimulate:
    """Tests for simulate()."""

    def test_simulates_range(self):
        """Should report the delays for a range of retries."""
        backoff = Backoff.linear(5, 10).no_jitter()
        assert backoff.simulate(1, 3) == {1: 5, 2: 15, 3: 25}
        assert backoff.simulate(2) == 15
        assert backoff.simulate_in_ms(1) == 5000
        assert backoff.simulate_in_seconds(1, 2) == {1: 5, 2: 15}
        assert backoff.simulate_in_us(1) == 5_000_000

    def test_simulates_beyond_max_attempts(self):
        """Should report None beyond the last retry."""
        backoff = Backoff.fixed(1).no_jitter().max_attempts(2)
        assert backoff.simulate(1, 3) == {1: 1, 2: None, 3: None}

    def test_invalid_ranges(self):
        """Should give nothing for invalid ranges."""
        backoff = Backoff.fixed(1)
        assert backoff.simulate(0) is None
        assert backoff.simulate(3, 1) == {}

    def test_does_not_start(self):
        """Should leave the backoff configurable."""
        backoff = Backoff.fixed(1).no_jitter()
        backoff.simulate(1, 3)
        backoff.max_attempts(2)
        assert backoff.simulate(2) is None

    def test_matches_the_run(self):
        """Should report the same jittered delays the run then uses."""
        backoff = Backoff.fixed(10, rng=random.Random(9)).max_attempts(4)
        simulated = backoff.simulate(1, 3)
        assert delays(backoff) == [simulated[1], simulated[2], simulated[3]]
