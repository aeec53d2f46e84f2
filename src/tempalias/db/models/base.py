"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- Enum types shared by the persisted state
"""

import enum
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, func
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=func.now()),
]

MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all tempalias models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class AliasStatus(enum.Enum):
    """Alias lifecycle states.

    States:
        ACTIVE: Alias is within its validity window
        EXPIRED: Validity window has ended; remote deletion was attempted

    Transitions are monotonic: ACTIVE -> EXPIRED, never back.
    """

    ACTIVE = "active"
    EXPIRED = "expired"


class DeliveryStatus(enum.Enum):
    """Delivery status reported by the provider for a forwarded message.

    The provider may report other values; unknown ones map to UNKNOWN.
    """

    DELIVERED = "DELIVERED"
    REFUSED = "REFUSED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    SPAM = "SPAM"
    UNKNOWN = "UNKNOWN"
