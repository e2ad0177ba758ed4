"""
Tests for clock, identifier, lock, retry and logging utilities.
"""

import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from aivp.exceptions import InvalidTransitionError, StoreUnavailableError
from aivp.utils.clock import Clock, FixedStepClock, IdGenerator, to_base36
from aivp.utils.locks import KeyedLock
from aivp.utils.logging import configure_logging, get_logger, log_extra
from aivp.utils.retry import RetryConfig, call_with_retry, is_retryable

T0 = datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)


class TestClock:
    def test_wall_clock_is_utc(self):
        assert Clock().now().tzinfo == timezone.utc

    def test_fixed_step_clock(self):
        clock = FixedStepClock(T0, step=timedelta(milliseconds=5))

        assert clock.now() == T0
        assert clock.now() == T0 + timedelta(milliseconds=5)

        clock.set(T0 - timedelta(hours=1))
        assert clock.now() == T0 - timedelta(hours=1)

    def test_naive_start_treated_as_utc(self):
        clock = FixedStepClock(datetime(2025, 1, 6, 9, 0, 0))

        assert clock.now() == T0


class TestIdGenerator:
    @pytest.mark.parametrize("value,expected", [(0, "0"), (35, "Z"), (36, "10"), (1295, "ZZ")])
    def test_to_base36(self, value, expected):
        assert to_base36(value) == expected

    def test_to_base36_rejects_negative(self):
        with pytest.raises(ValueError):
            to_base36(-1)

    def test_identifier_format(self):
        generator = IdGenerator(FixedStepClock(T0), prefix="RP", suffix_length=6)

        anonymous_id = generator.new_anonymous_id()

        millis = to_base36(int(T0.timestamp() * 1000))
        assert re.fullmatch(rf"RP-{millis}-[0-9A-Z]{{6}}", anonymous_id)

    def test_identifiers_differ_within_same_millisecond(self):
        generator = IdGenerator(FixedStepClock(T0, step=timedelta(0)), prefix="RP", suffix_length=8)

        ids = {generator.new_anonymous_id() for _ in range(50)}

        assert len(ids) == 50


class TestKeyedLock:
    def test_idle_keys_released(self):
        locks = KeyedLock()

        with locks.hold("p1"):
            assert len(locks) == 1

        assert len(locks) == 0

    def test_same_key_serialized(self):
        locks = KeyedLock()
        events = []

        def worker(name):
            with locks.hold("p1"):
                events.append(f"{name}-in")
                time.sleep(0.01)
                events.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(name,)) for name in ["a", "b", "c"]]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for index in range(0, len(events), 2):
            assert events[index].split("-")[0] == events[index + 1].split("-")[0]

    def test_different_keys_independent(self):
        locks = KeyedLock()

        with locks.hold("p1"):
            acquired = threading.Event()

            def other():
                with locks.hold("p2"):
                    acquired.set()

            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=1)
            thread.join()


class TestRetry:
    def test_exponential_delay_capped(self):
        retry = RetryConfig(initial_delay=0.1, max_delay=0.3, backoff_multiplier=2.0, jitter=False)

        assert [retry.delay_for(n) for n in (1, 2, 3)] == [0.1, 0.2, 0.3]

    def test_jitter_within_bounds(self):
        retry = RetryConfig(initial_delay=1.0, max_delay=1.0, jitter=True)

        assert 0.5 <= retry.delay_for(1) <= 1.0

    def test_is_retryable(self):
        assert is_retryable(StoreUnavailableError("get", "down")) is True
        assert is_retryable(InvalidTransitionError("consent", "withdrawn")) is False
        assert is_retryable(RuntimeError("boom")) is False

    def test_retries_until_success(self):
        operation = Mock(side_effect=[StoreUnavailableError("get", "down"), "ok"])
        delays = []

        result = call_with_retry(operation, RetryConfig(jitter=False), "get", sleep=delays.append)

        assert result == "ok"
        assert operation.call_count == 2
        assert delays == [0.1]

    def test_gives_up_after_max_attempts(self):
        operation = Mock(side_effect=StoreUnavailableError("get", "down"))

        with pytest.raises(StoreUnavailableError):
            call_with_retry(operation, RetryConfig(max_attempts=3), "get", sleep=lambda s: None)
        assert operation.call_count == 3

    def test_non_retryable_raised_immediately(self):
        operation = Mock(side_effect=InvalidTransitionError("consent", "research_participant"))

        with pytest.raises(InvalidTransitionError):
            call_with_retry(operation, RetryConfig(), "consent", sleep=lambda s: None)
        assert operation.call_count == 1


class TestLogging:
    def test_loggers_share_one_structured_handler(self):
        get_logger("aivp.services.example")
        configure_logging()

        package_logger = logging.getLogger("aivp")
        structured = [h for h in package_logger.handlers if h.filters]
        assert len(structured) == 1

    def test_configure_sets_level(self):
        package_logger = configure_logging(level="debug")
        try:
            assert package_logger.level == logging.DEBUG
        finally:
            configure_logging(level="INFO")

    def test_structured_fields_rendered(self):
        package_logger = configure_logging(log_format="structured")
        handler = [h for h in package_logger.handlers if h.filters][0]
        record = logging.LogRecord("aivp.test", logging.INFO, __file__, 1, "Consent recorded", None, None)
        record.participant_id = "p1"

        handler.filter(record)
        line = handler.format(record)

        assert "participant_id=p1" in line
        assert "operation= " in line

    def test_log_extra_omits_unset_fields(self):
        assert log_extra(participant_id="p1") == {"participant_id": "p1"}
        assert log_extra() == {}
