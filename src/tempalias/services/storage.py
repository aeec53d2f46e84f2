"""Local persistent store for device state.

This module provides the key-value store used to save and restore state
across sessions:
- Device identity
- Alias collection (JSON)
- Confirmation code registry (JSON)
- Auto-poll preference and saved forward target

The store contract is deliberately small: get/set/remove on string values.
Writes are synchronous so that a mutation and its persistence complete
without yielding to the event loop.

Example:
    from tempalias.services.storage import SqlStateStore, StorageKey

    store = SqlStateStore.from_url("sqlite:///tempalias.db")
    store.set(StorageKey.AUTO_POLL, "true")
    enabled = store.get(StorageKey.AUTO_POLL) == "true"
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tempalias.db import create_session_factory, create_store_engine
from tempalias.db.models.state import StateEntry

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from tempalias.core.config import StoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageKey(str, Enum):
    """Names of the persisted slots."""

    DEVICE_ID = "device_id"
    ALIASES = "aliases"
    CONFIRMATION_CODES = "confirmation_codes"
    AUTO_POLL = "auto_poll"
    FORWARD_TARGET = "forward_target"


class StorageError(Exception):
    """Raised when the underlying store cannot be read or written."""


class StateStore(Protocol):
    """Key-value contract consumed by the lifecycle engine."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def _key(key: str | StorageKey) -> str:
    return key.value if isinstance(key, StorageKey) else key


class MemoryStateStore:
    """Dict-backed store, used in tests and for throwaway sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(_key(key))

    def set(self, key: str, value: str) -> None:
        self._data[_key(key)] = value

    def remove(self, key: str) -> None:
        self._data.pop(_key(key), None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _key(key) in self._data


class SqlStateStore:
    """SQLAlchemy-backed store persisting slots in the ``state_entries`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False) -> SqlStateStore:
        """Create a store for the given database URL, creating tables if needed."""
        engine = create_store_engine(url, echo=echo)
        return cls(create_session_factory(engine))

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> SqlStateStore:
        """Create a store from StoreSettings."""
        return cls.from_url(settings.url, echo=settings.echo)

    def get(self, key: str) -> str | None:
        try:
            with self._session_factory() as session:
                entry = session.get(StateEntry, _key(key))
                return entry.value if entry is not None else None
        except SQLAlchemyError as e:
            msg = f"Failed to read state slot {_key(key)}"
            raise StorageError(msg) from e

    def set(self, key: str, value: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                session.merge(
                    StateEntry(key=_key(key), value=value, updated_at=datetime.now(UTC))
                )
        except SQLAlchemyError as e:
            msg = f"Failed to write state slot {_key(key)}"
            raise StorageError(msg) from e

    def remove(self, key: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                entry = session.get(StateEntry, _key(key))
                if entry is not None:
                    session.delete(entry)
        except SQLAlchemyError as e:
            msg = f"Failed to remove state slot {_key(key)}"
            raise StorageError(msg) from e


def load_json_slot(
    store: StateStore,
    key: StorageKey,
    adapter: TypeAdapter[T],
    default: T,
) -> T:
    """Load and validate a JSON slot, recovering from corruption.

    Malformed or schema-invalid content is logged, the slot is removed
    and the default is returned. Corruption is never fatal to a session.

    Args:
        store: Store to read from.
        key: Slot name.
        adapter: Pydantic adapter describing the slot's shape.
        default: Value returned when the slot is missing or corrupt.

    Returns:
        The validated slot value, or the default.
    """
    raw = store.get(key.value)
    if raw is None:
        return default

    try:
        return adapter.validate_json(raw)
    except (ValidationError, json.JSONDecodeError, ValueError) as e:
        logger.warning(
            "Discarding corrupt state slot: key=%s, error=%s",
            key.value,
            e,
        )
        store.remove(key.value)
        return default


def save_json_slot(
    store: StateStore,
    key: StorageKey,
    adapter: TypeAdapter[T],
    value: T,
) -> None:
    """Serialize a value through its adapter and write it to the slot."""
    store.set(key.value, adapter.dump_json(value).decode())
