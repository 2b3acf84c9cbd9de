"""Per-identifier failed login tracking and lockout.

Callers check ``can_attempt`` before asking the identity provider to verify
credentials and report the outcome with ``record_result``. ``try_attempt``
runs the check, the verification and the report under one lock so two
concurrent attempts for the same identifier cannot both slip through the
check.

Failure counts are not reset when a lock expires on its own; only a
successful login (or an admin reset) clears them, unless
``reset_failures_after_lockout`` is enabled.
"""
import math
import threading
import time
from contextlib import contextmanager
from typing import Callable

from loginguard.attempt_logger import AttemptLogger
from loginguard.config import Config
from loginguard.models import AttemptDecision, AttemptOutcome, AttemptRecord
from loginguard.store import AttemptStore, AttemptStoreError

MAX_ATTEMPTS = 5
LOCKOUT_DURATION_S = 15 * 60
STORAGE_KEY_PREFIX = "login_attempts_"

UNAVAILABLE_MESSAGE = "Login is temporarily unavailable. Try again later."


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


def retry_message(retry_after_seconds: int) -> str:
    if retry_after_seconds >= 60:
        minutes = math.ceil(retry_after_seconds / 60)
        unit = "minute" if minutes == 1 else "minutes"
        return f"Too many failed attempts. Try again in {minutes} {unit}."
    unit = "second" if retry_after_seconds == 1 else "seconds"
    return f"Too many failed attempts. Try again in {retry_after_seconds} {unit}."


class AttemptTracker:
    def __init__(
        self,
        store: AttemptStore,
        max_attempts: int = MAX_ATTEMPTS,
        lockout_duration_s: int = LOCKOUT_DURATION_S,
        clock: Callable[[], int] = now_ms,
        fail_closed: bool = True,
        reset_failures_after_lockout: bool = False,
        key_prefix: str = STORAGE_KEY_PREFIX,
        logger: AttemptLogger | None = None,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration_ms = lockout_duration_s * 1000
        self.clock = clock
        self.fail_closed = fail_closed
        self.reset_failures_after_lockout = reset_failures_after_lockout
        self.key_prefix = key_prefix
        self.logger = logger
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        store: AttemptStore,
        clock: Callable[[], int] = now_ms,
        logger: AttemptLogger | None = None,
    ) -> "AttemptTracker":
        return cls(
            store,
            max_attempts=cfg.max_attempts,
            lockout_duration_s=cfg.lockout_duration_s,
            clock=clock,
            fail_closed=cfg.fail_closed,
            reset_failures_after_lockout=cfg.reset_failures_after_lockout,
            key_prefix=cfg.storage_key_prefix,
            logger=logger,
        )

    def storage_key(self, identifier: str) -> str:
        return self.key_prefix + identifier

    def can_attempt(self, identifier: str) -> AttemptDecision:
        try:
            record = self.store.get(self.storage_key(identifier))
        except AttemptStoreError as exc:
            self._store_error(identifier, "read", exc)
            if self.fail_closed:
                return AttemptDecision(allowed=False, message=UNAVAILABLE_MESSAGE)
            return AttemptDecision(allowed=True)

        now = self.clock()
        if record is None or not record.is_locked(now):
            decision = AttemptDecision(allowed=True)
        else:
            retry_after = math.ceil((record.locked_until - now) / 1000)
            decision = AttemptDecision(allowed=False, retry_after_seconds=retry_after, message=retry_message(retry_after))

        if self.logger:
            self.logger.log(
                "attempt_check",
                identifier,
                "allowed" if decision.allowed else "locked",
                extra={"failure_count": record.failure_count if record else 0},
                debug=True,
            )
        return decision

    def record_result(self, identifier: str, success: bool) -> None:
        """Clear the identifier on success, count a failure otherwise.

        Raises ``AttemptStoreError`` when the store fails and the tracker is
        configured to fail closed; the caller must then deny the login.
        """
        try:
            if success:
                self.store.remove(self.storage_key(identifier))
            else:
                self._record_failure(identifier)
        except AttemptStoreError as exc:
            self._store_error(identifier, "write", exc)
            if self.fail_closed:
                raise

    def try_attempt(self, identifier: str, verify: Callable[[], bool]) -> AttemptOutcome:
        """Check, verify and record as one step for this identifier."""
        with self._identifier_lock(identifier):
            decision = self.can_attempt(identifier)
            if not decision.allowed:
                return AttemptOutcome(
                    allowed=False,
                    retry_after_seconds=decision.retry_after_seconds,
                    message=decision.message,
                )

            success = bool(verify())
            try:
                if success:
                    self.store.remove(self.storage_key(identifier))
                    return AttemptOutcome(allowed=True, success=True)
                record = self._record_failure(identifier)
            except AttemptStoreError as exc:
                self._store_error(identifier, "write", exc)
                if self.fail_closed:
                    return AttemptOutcome(allowed=False, message=UNAVAILABLE_MESSAGE)
                return AttemptOutcome(allowed=True, success=success)

            if record.locked_until is None:
                return AttemptOutcome(allowed=True)
            retry_after = math.ceil((record.locked_until - record.last_attempt_at) / 1000)
            return AttemptOutcome(
                allowed=True,
                locked_after=True,
                retry_after_seconds=retry_after,
                message=retry_message(retry_after),
            )

    def status(self, identifier: str) -> AttemptRecord | None:
        """Current record, or None. Store failures follow the fail-closed setting."""
        try:
            return self.store.get(self.storage_key(identifier))
        except AttemptStoreError as exc:
            self._store_error(identifier, "read", exc)
            if self.fail_closed:
                raise
            return None

    def reset(self, identifier: str) -> None:
        self.store.remove(self.storage_key(identifier))

    def _record_failure(self, identifier: str) -> AttemptRecord:
        now = self.clock()
        was_locked = False

        def mutate(current: AttemptRecord | None) -> AttemptRecord:
            nonlocal was_locked
            was_locked = current is not None and current.is_locked(now)
            return self._apply_failure(identifier, current, now)

        record = self.store.update(self.storage_key(identifier), mutate)
        if self.logger:
            self.logger.log(
                "failure_recorded",
                identifier,
                "counted",
                extra={"failure_count": record.failure_count},
                debug=True,
            )
        if record.locked_until is not None and not was_locked and self.logger:
            self.logger.log(
                "lockout_started",
                identifier,
                "locked",
                extra={"failure_count": record.failure_count, "locked_until": record.locked_until},
            )
        return record

    def _apply_failure(self, identifier: str, current: AttemptRecord | None, now: int) -> AttemptRecord:
        if current is None:
            current = AttemptRecord(identifier=identifier)
        elif (
            self.reset_failures_after_lockout
            and current.locked_until is not None
            and now >= current.locked_until
        ):
            current = AttemptRecord(identifier=identifier)

        failure_count = current.failure_count + 1
        locked_until = None
        if failure_count >= self.max_attempts:
            locked_until = now + self.lockout_duration_ms
        return AttemptRecord(
            identifier=identifier,
            failure_count=failure_count,
            last_attempt_at=now,
            locked_until=locked_until,
        )

    def _store_error(self, identifier: str, operation: str, exc: Exception) -> None:
        if self.logger:
            self.logger.log(
                "store_error",
                identifier,
                "denied" if self.fail_closed else "allowed",
                extra={"operation": operation, "error": str(exc)},
            )

    @contextmanager
    def _identifier_lock(self, identifier: str):
        # entry is [lock, waiter count]; dropped when the last waiter leaves
        with self._locks_guard:
            entry = self._locks.setdefault(identifier, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(identifier, None)
