import pytest
import sys
import os
import json
import threading
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
from loginguard.attempt_logger import AttemptLogger
from loginguard.attempt_tracker import (
    LOCKOUT_DURATION_S,
    MAX_ATTEMPTS,
    UNAVAILABLE_MESSAGE,
    AttemptTracker,
    normalize_identifier,
    now_ms,
    retry_message,
)
from loginguard.config import Config
from loginguard.store import AttemptStoreError, MemoryAttemptStore

EMAIL = "a@b.com"


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class BrokenStore(MemoryAttemptStore):
    def get(self, key):
        raise AttemptStoreError("down")

    def update(self, key, mutate):
        raise AttemptStoreError("down")

    def remove(self, key):
        raise AttemptStoreError("down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryAttemptStore()


@pytest.fixture
def tracker(store, clock):
    return AttemptTracker(store, clock=clock)


def fail(tracker, identifier=EMAIL, times=MAX_ATTEMPTS):
    for _ in range(times):
        tracker.record_result(identifier, False)


class TestCanAttempt:
    """Test suite for AttemptTracker.can_attempt"""

    def test_defaults(self, tracker):
        """Test the default threshold and lockout window"""
        assert MAX_ATTEMPTS == 5
        assert LOCKOUT_DURATION_S == 900
        assert tracker.lockout_duration_ms == 900_000

    def test_unknown_identifier_is_allowed(self, tracker):
        """Test that an identifier with no record may attempt"""
        decision = tracker.can_attempt(EMAIL)
        assert decision.allowed == True
        assert decision.retry_after_seconds is None

    def test_allowed_below_threshold(self, tracker):
        """Test that four failures do not lock"""
        fail(tracker, times=MAX_ATTEMPTS - 1)
        assert tracker.can_attempt(EMAIL).allowed == True

    def test_locked_after_threshold(self, tracker):
        """Test that the fifth failure locks with a retry inside the window"""
        fail(tracker)
        decision = tracker.can_attempt(EMAIL)
        assert decision.allowed == False
        assert 0 < decision.retry_after_seconds <= 900
        assert decision.message == "Too many failed attempts. Try again in 15 minutes."

    def test_retry_after_rounds_up(self, tracker, clock):
        """Test that partial seconds round up"""
        fail(tracker)
        clock.advance(899.5)
        decision = tracker.can_attempt(EMAIL)
        assert decision.allowed == False
        assert decision.retry_after_seconds == 1
        assert decision.message == "Too many failed attempts. Try again in 1 second."

    def test_unlocks_after_window(self, tracker, clock):
        """Test that attempts are allowed again once the lock expires"""
        fail(tracker)
        clock.advance(899)
        assert tracker.can_attempt(EMAIL).allowed == False
        clock.advance(1)
        assert tracker.can_attempt(EMAIL).allowed == True

    def test_can_attempt_is_read_only(self, tracker, store):
        """Test that repeated checks never write to the store"""
        fail(tracker, times=3)
        writes = store.writes
        before = store.items[tracker.storage_key(EMAIL)]
        for _ in range(10):
            tracker.can_attempt(EMAIL)
        assert store.writes == writes
        assert store.items[tracker.storage_key(EMAIL)] == before
        assert tracker.status(EMAIL).failure_count == 3

    def test_can_attempt_does_not_reset_expired_lock(self, tracker, store, clock):
        """Test that passing through an expired lock leaves the record alone"""
        fail(tracker)
        clock.advance(901)
        writes = store.writes
        assert tracker.can_attempt(EMAIL).allowed == True
        assert store.writes == writes
        assert tracker.status(EMAIL).failure_count == MAX_ATTEMPTS

    def test_identifiers_are_tracked_separately(self, tracker):
        """Test that one identifier's lock does not affect another"""
        fail(tracker, "user1@example.com")
        fail(tracker, "user2@example.com", times=1)
        assert tracker.can_attempt("user1@example.com").allowed == False
        assert tracker.can_attempt("user2@example.com").allowed == True


class TestRecordResult:
    """Test suite for AttemptTracker.record_result"""

    def test_first_failure_creates_record(self, tracker, clock):
        """Test lazy creation of the record on the first failure"""
        assert tracker.status(EMAIL) is None
        tracker.record_result(EMAIL, False)
        record = tracker.status(EMAIL)
        assert record.identifier == EMAIL
        assert record.failure_count == 1
        assert record.last_attempt_at == clock.now
        assert record.locked_until is None

    def test_lock_set_at_threshold(self, tracker, clock):
        """Test that locked_until is set exactly when the threshold is reached"""
        fail(tracker, times=MAX_ATTEMPTS - 1)
        assert tracker.status(EMAIL).locked_until is None
        tracker.record_result(EMAIL, False)
        assert tracker.status(EMAIL).locked_until == clock.now + 900_000

    def test_success_deletes_record(self, tracker, store):
        """Test that success removes the record even while locked"""
        fail(tracker)
        tracker.record_result(EMAIL, True)
        assert tracker.storage_key(EMAIL) not in store.items
        assert tracker.can_attempt(EMAIL).allowed == True

    def test_count_restarts_after_success(self, tracker):
        """Test that a fresh failure after success counts from one"""
        fail(tracker, times=7)
        tracker.record_result(EMAIL, True)
        tracker.record_result(EMAIL, False)
        assert tracker.status(EMAIL).failure_count == 1

    def test_success_without_record_is_harmless(self, tracker):
        """Test that recording success for an unknown identifier does nothing"""
        tracker.record_result(EMAIL, True)
        assert tracker.status(EMAIL) is None

    def test_count_keeps_growing_across_lock_expiry(self, tracker, clock):
        """Test that an expired lock does not reset the failure count"""
        fail(tracker)
        clock.advance(901)
        tracker.record_result(EMAIL, False)
        record = tracker.status(EMAIL)
        assert record.failure_count == MAX_ATTEMPTS + 1
        assert record.locked_until == clock.now + 900_000
        assert tracker.can_attempt(EMAIL).allowed == False

    def test_reset_after_lockout_option(self, store, clock):
        """Test opting into a fresh count once a lock has expired"""
        tracker = AttemptTracker(store, clock=clock, reset_failures_after_lockout=True)
        fail(tracker)
        clock.advance(901)
        tracker.record_result(EMAIL, False)
        record = tracker.status(EMAIL)
        assert record.failure_count == 1
        assert record.locked_until is None

    def test_storage_key_prefix(self, tracker, store):
        """Test the derived storage key"""
        tracker.record_result(EMAIL, False)
        assert list(store.items) == ["login_attempts_a@b.com"]

    def test_corrupt_record_counts_from_zero(self, tracker, store):
        """Test that a malformed stored value is treated as no record"""
        store.items[tracker.storage_key(EMAIL)] = "{not json"
        assert tracker.can_attempt(EMAIL).allowed == True
        tracker.record_result(EMAIL, False)
        assert tracker.status(EMAIL).failure_count == 1

    def test_lockout_started_is_logged_once(self, store, clock, tmp_path):
        """Test that the lockout event is written when the lock begins"""
        log_path = tmp_path / "attempts.log"
        tracker = AttemptTracker(store, clock=clock, logger=AttemptLogger(str(log_path)))
        fail(tracker, times=MAX_ATTEMPTS + 2)
        events = [json.loads(line)["event"] for line in log_path.read_text().splitlines()]
        assert events == ["lockout_started"]

    def test_debug_events_follow_logger_setting(self, store, clock, tmp_path):
        """Test that check and failure events are written only by a debug logger"""
        log_path = tmp_path / "attempts.log"
        tracker = AttemptTracker(store, clock=clock, logger=AttemptLogger(str(log_path), debug=True))
        tracker.can_attempt(EMAIL)
        tracker.record_result(EMAIL, False)
        entries = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert [e["event"] for e in entries] == ["attempt_check", "failure_recorded"]
        assert entries[0]["failure_count"] == 0
        assert entries[1]["failure_count"] == 1
        assert entries[1]["identifier"] == "a***@b.com"


class TestStoreFailures:
    """Test suite for fail-closed and fail-open behaviour"""

    def test_fail_closed_denies_check(self, clock):
        """Test that a store outage denies attempts by default"""
        tracker = AttemptTracker(BrokenStore(), clock=clock)
        decision = tracker.can_attempt(EMAIL)
        assert decision.allowed == False
        assert decision.retry_after_seconds is None
        assert decision.message == UNAVAILABLE_MESSAGE

    def test_fail_closed_raises_on_record(self, clock):
        """Test that a failed write is surfaced to the caller"""
        tracker = AttemptTracker(BrokenStore(), clock=clock)
        with pytest.raises(AttemptStoreError):
            tracker.record_result(EMAIL, False)
        with pytest.raises(AttemptStoreError):
            tracker.record_result(EMAIL, True)

    def test_fail_open(self, clock):
        """Test that fail-open lets attempts through and swallows write errors"""
        tracker = AttemptTracker(BrokenStore(), clock=clock, fail_closed=False)
        assert tracker.can_attempt(EMAIL).allowed == True
        tracker.record_result(EMAIL, False)

    def test_try_attempt_fail_closed(self, clock):
        """Test that try_attempt denies when the store is down"""
        tracker = AttemptTracker(BrokenStore(), clock=clock)
        outcome = tracker.try_attempt(EMAIL, lambda: True)
        assert outcome.allowed == False
        assert outcome.message == UNAVAILABLE_MESSAGE

    def test_status_fail_closed_raises(self, clock):
        """Test that status surfaces a store outage by default"""
        tracker = AttemptTracker(BrokenStore(), clock=clock)
        with pytest.raises(AttemptStoreError):
            tracker.status(EMAIL)

    def test_status_fail_open_reports_no_record(self, clock):
        """Test that status treats an outage as no record when failing open"""
        tracker = AttemptTracker(BrokenStore(), clock=clock, fail_closed=False)
        assert tracker.status(EMAIL) is None


class TestTryAttempt:
    """Test suite for the combined check-verify-record operation"""

    def test_success(self, tracker):
        """Test a successful verification clears state"""
        fail(tracker, times=2)
        outcome = tracker.try_attempt(EMAIL, lambda: True)
        assert outcome.allowed == True
        assert outcome.success == True
        assert tracker.status(EMAIL) is None

    def test_failure_reports_lock(self, tracker):
        """Test that the failure reaching the threshold reports locked_after"""
        fail(tracker, times=MAX_ATTEMPTS - 1)
        outcome = tracker.try_attempt(EMAIL, lambda: False)
        assert outcome.allowed == True
        assert outcome.success == False
        assert outcome.locked_after == True
        assert outcome.retry_after_seconds == 900

    def test_locked_identifier_skips_verification(self, tracker):
        """Test that the verifier is not called while locked"""
        fail(tracker)
        calls = []
        outcome = tracker.try_attempt(EMAIL, lambda: calls.append(1) or True)
        assert outcome.allowed == False
        assert outcome.retry_after_seconds == 900
        assert calls == []

    def test_concurrent_attempts_never_exceed_threshold(self, tracker):
        """Test that parallel attempts cannot verify more than the threshold allows"""
        verified = []
        barrier = threading.Barrier(20)

        def verify():
            verified.append(1)
            return False

        def worker():
            barrier.wait()
            tracker.try_attempt(EMAIL, verify)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(verified) == MAX_ATTEMPTS
        assert tracker.status(EMAIL).failure_count == MAX_ATTEMPTS
        assert tracker._locks == {}


class TestHelpers:
    """Test suite for module helpers"""

    def test_normalize_identifier(self):
        assert normalize_identifier("  Alice@Example.COM ") == "alice@example.com"

    def test_retry_message_minutes(self):
        assert retry_message(900) == "Too many failed attempts. Try again in 15 minutes."
        assert retry_message(61) == "Too many failed attempts. Try again in 2 minutes."
        assert retry_message(60) == "Too many failed attempts. Try again in 1 minute."

    def test_retry_message_seconds(self):
        assert retry_message(59) == "Too many failed attempts. Try again in 59 seconds."

    def test_now_ms_uses_wall_clock(self):
        with patch('time.time') as mock_time:
            mock_time.return_value = 1000.5
            assert now_ms() == 1_000_500

    def test_from_config(self, store):
        cfg = Config(max_attempts=3, lockout_duration_s=60, fail_closed=False, storage_key_prefix="x_")
        tracker = AttemptTracker.from_config(cfg, store)
        assert tracker.max_attempts == 3
        assert tracker.lockout_duration_ms == 60_000
        assert tracker.fail_closed == False
        assert tracker.storage_key("id") == "x_id"
