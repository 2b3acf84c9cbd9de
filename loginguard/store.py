"""Key/value persistence for attempt records.

Unreadable or malformed records read back as absent. Backend failures are
raised as ``AttemptStoreError`` so the tracker can decide whether to fail
closed or open.
"""
import json
import threading
from typing import Callable

from pydantic import ValidationError
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from loginguard import db
from loginguard.attempt_logger import AttemptLogger
from loginguard.models import AttemptRecord, LoginAttemptModel

Mutator = Callable[[AttemptRecord | None], AttemptRecord]


class AttemptStoreError(Exception):
    """The backing store could not be read or written."""


class _WriteConflict(Exception):
    pass


class AttemptStore:
    def __init__(self, logger: AttemptLogger | None = None):
        self.logger = logger

    def get(self, key: str) -> AttemptRecord | None:
        raise NotImplementedError

    def put(self, key: str, record: AttemptRecord) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def update(self, key: str, mutate: Mutator) -> AttemptRecord:
        """Atomically replace the record under ``key`` with ``mutate(current)``."""
        raise NotImplementedError

    def _corrupt(self, key: str, reason: str) -> None:
        if self.logger:
            self.logger.log("store_corrupt_record", key, "ignored", extra={"reason": reason})


class MemoryAttemptStore(AttemptStore):
    """In-process store holding JSON strings, the same shape a browser keeps in local storage."""

    def __init__(self, logger: AttemptLogger | None = None):
        super().__init__(logger)
        self.items: dict[str, str] = {}
        self.reads = 0
        self.writes = 0
        self._lock = threading.RLock()

    def get(self, key: str) -> AttemptRecord | None:
        with self._lock:
            self.reads += 1
            raw = self.items.get(key)
        if raw is None:
            return None
        try:
            return AttemptRecord.model_validate(json.loads(raw))
        except (ValueError, TypeError) as exc:
            self._corrupt(key, type(exc).__name__)
            return None

    def put(self, key: str, record: AttemptRecord) -> None:
        with self._lock:
            self.writes += 1
            self.items[key] = record.model_dump_json()

    def remove(self, key: str) -> None:
        with self._lock:
            self.writes += 1
            self.items.pop(key, None)

    def update(self, key: str, mutate: Mutator) -> AttemptRecord:
        with self._lock:
            record = mutate(self.get(key))
            self.put(key, record)
            return record


class SqlAttemptStore(AttemptStore):
    """Shared store on the ``login_attempts`` table.

    ``update`` is a compare-and-swap loop, so concurrent writers in other
    processes never lose an increment.
    """

    def __init__(self, logger: AttemptLogger | None = None, max_retries: int = 10):
        super().__init__(logger)
        self.max_retries = max_retries

    def _decode(self, key: str, row: LoginAttemptModel) -> AttemptRecord | None:
        try:
            return AttemptRecord.from_orm_model(row)
        except ValidationError as exc:
            self._corrupt(key, f"{exc.error_count()} validation errors")
            return None

    def get(self, key: str) -> AttemptRecord | None:
        try:
            with db.get_session() as session:
                row = session.get(LoginAttemptModel, key)
                if row is None:
                    return None
                return self._decode(key, row)
        except SQLAlchemyError as exc:
            raise AttemptStoreError(f"read failed for {key}") from exc

    def put(self, key: str, record: AttemptRecord) -> None:
        try:
            with db.get_session() as session:
                session.merge(LoginAttemptModel(key=key, **record.model_dump()))
        except SQLAlchemyError as exc:
            raise AttemptStoreError(f"write failed for {key}") from exc

    def remove(self, key: str) -> None:
        try:
            with db.get_session() as session:
                row = session.get(LoginAttemptModel, key)
                if row is not None:
                    session.delete(row)
        except SQLAlchemyError as exc:
            raise AttemptStoreError(f"delete failed for {key}") from exc

    def update(self, key: str, mutate: Mutator) -> AttemptRecord:
        for _ in range(self.max_retries):
            try:
                with db.get_session() as session:
                    row = session.get(LoginAttemptModel, key)
                    current = self._decode(key, row) if row is not None else None
                    record = mutate(current)
                    if row is None:
                        session.add(LoginAttemptModel(key=key, **record.model_dump()))
                    else:
                        stmt = (
                            sql_update(LoginAttemptModel)
                            .where(LoginAttemptModel.key == key)
                            .where(LoginAttemptModel.failure_count == row.failure_count)
                            .where(LoginAttemptModel.last_attempt_at == row.last_attempt_at)
                            .values(**record.model_dump())
                            .execution_options(synchronize_session=False)
                        )
                        if session.execute(stmt).rowcount != 1:
                            raise _WriteConflict(key)
                return record
            except (IntegrityError, _WriteConflict):
                continue
            except SQLAlchemyError as exc:
                raise AttemptStoreError(f"update failed for {key}") from exc
        raise AttemptStoreError(f"update for {key} lost {self.max_retries} races in a row")


def build_store(backend: str, logger: AttemptLogger | None = None) -> AttemptStore:
    if backend == "memory":
        return MemoryAttemptStore(logger)
    if backend == "sql":
        return SqlAttemptStore(logger)
    raise ValueError(f"Unsupported store backend: {backend}")
