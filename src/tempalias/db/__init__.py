"""tempalias database module.

Local persistence for a single device:
- SQLAlchemy 2.x ORM models
- Engine and session factory for the key-value state table
"""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from tempalias.db.models.base import Base


def create_store_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for the state store and ensure its tables exist.

    Args:
        url: SQLAlchemy database URL (e.g. ``sqlite:///tempalias.db``).
        echo: Enable SQL statement logging.

    Returns:
        Configured SQLAlchemy engine.
    """
    engine = create_engine(url, echo=echo, future=True)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to the given engine."""
    return sessionmaker(engine, expire_on_commit=False)


__all__ = ["create_session_factory", "create_store_engine"]
