from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .clock import Clock
from .database import db_session
from .entities import SCHEMA_VERSION, StoredState
from .errors import PersistenceError
from .migrations import migrate
from .models import KeyValueRecord

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 5 * 1024 * 1024


class KeyValueStore:
    """
    Namespaced key/value persistence on top of the ``kv_records`` table.

    Writes to the same key are serialised with a per-key lock; every call runs
    in its own transaction. A key's lock only exists while a write holds or
    waits for it.
    """

    def __init__(self, session_factory: sessionmaker, namespace: str) -> None:
        self._session_factory = session_factory
        self.namespace = namespace
        self._guard = threading.Lock()
        self._key_locks: Dict[str, List[Any]] = {}

    @contextmanager
    def _lock_for(self, key: str) -> Generator[None, None, None]:
        with self._guard:
            slot = self._key_locks.get(key)
            if slot is None:
                slot = self._key_locks[key] = [threading.Lock(), 0]
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if not slot[1]:
                    del self._key_locks[key]

    def _find(self, session, key: str) -> Optional[KeyValueRecord]:
        return (
            session.query(KeyValueRecord)
            .filter(KeyValueRecord.namespace == self.namespace, KeyValueRecord.key == key)
            .one_or_none()
        )

    def get(self, key: str) -> Optional[str]:
        try:
            with db_session(self._session_factory) as session:
                record = self._find(session, key)
                return record.value if record else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Reading '{key}' failed: {exc}", rule="persistence.read_failed") from exc

    def set(self, key: str, value: str) -> None:
        with self._lock_for(key):
            try:
                with db_session(self._session_factory) as session:
                    record = self._find(session, key)
                    if record:
                        record.value = value
                    else:
                        session.add(KeyValueRecord(namespace=self.namespace, key=key, value=value))
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Writing '{key}' failed: {exc}") from exc

    def delete(self, key: str) -> bool:
        with self._lock_for(key):
            try:
                with db_session(self._session_factory) as session:
                    record = self._find(session, key)
                    if record is None:
                        return False
                    session.delete(record)
                    return True
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Deleting '{key}' failed: {exc}") from exc


class PersistenceGateway:
    """Loads and saves the single root record, applying schema migrations on load."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        key: str = "task-tracker-data",
        max_bytes: int = MAX_DOCUMENT_BYTES,
    ) -> None:
        self.store = store
        self.clock = clock
        self.key = key
        self.max_bytes = max_bytes

    def load(self) -> Optional[StoredState]:
        raw = self.store.get(self.key)
        if raw is None:
            return None
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(
                f"Stored document '{self.key}' is not valid JSON", rule="persistence.corrupt_document"
            ) from exc
        if not isinstance(document, dict):
            raise PersistenceError(
                f"Stored document '{self.key}' is not an object", rule="persistence.corrupt_document"
            )
        try:
            document = migrate(document)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise PersistenceError(
                f"Stored document '{self.key}' could not be migrated: {exc!r}",
                rule="persistence.corrupt_document",
            ) from exc
        try:
            state = StoredState.model_validate(document)
        except SchemaValidationError as exc:
            raise PersistenceError(
                f"Stored document '{self.key}' does not match schema {SCHEMA_VERSION}: {exc}",
                rule="persistence.corrupt_document",
            ) from exc
        logger.debug(
            "Loaded state: %d tasks, %d entries, %d meal breaks",
            len(state.tasks),
            len(state.time_entries),
            len(state.meal_breaks),
        )
        return state

    def save(self, state: StoredState) -> StoredState:
        """Persist ``state`` atomically and return the stamped copy that was written."""
        stamped = state.model_copy(update={"version": SCHEMA_VERSION, "last_updated": self.clock.now()})
        payload = json.dumps(stamped.to_document(), ensure_ascii=False)
        size = len(payload.encode("utf-8"))
        if size > self.max_bytes:
            raise PersistenceError(
                f"Document of {size} bytes exceeds the {self.max_bytes} byte quota",
                rule="persistence.quota_exceeded",
            )
        self.store.set(self.key, payload)
        logger.debug("Saved state '%s' (%d bytes)", self.key, size)
        return stamped

    def quarantine(self) -> Optional[str]:
        """Move an unreadable document aside so a fresh state can be started."""
        raw = self.store.get(self.key)
        if raw is None:
            return None
        backup_key = f"{self.key}.corrupt-{self.clock.now():%Y%m%dT%H%M%S}"
        self.store.set(backup_key, raw)
        self.store.delete(self.key)
        logger.warning("Moved unreadable document '%s' to '%s'", self.key, backup_key)
        return backup_key

    def clear(self) -> bool:
        return self.store.delete(self.key)
