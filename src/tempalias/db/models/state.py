"""Key-value state entries for the local persistent store.

Each entry holds one serialized slot (device identity, alias collection,
code registry, preferences). Values are opaque strings to the store.
"""

from __future__ import annotations

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from tempalias.db.models.base import Base, MediumString, TimestampTZ


class StateEntry(Base):
    """A single persisted slot, keyed by name."""

    __tablename__ = "state_entries"

    key: Mapped[MediumString] = mapped_column(primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[TimestampTZ]

    def __repr__(self) -> str:
        return f"<StateEntry(key={self.key!r}, size={len(self.value)})>"
