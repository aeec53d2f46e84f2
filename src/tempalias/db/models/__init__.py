"""Database models for the tempalias local store."""

from tempalias.db.models.base import AliasStatus, Base, DeliveryStatus, metadata
from tempalias.db.models.state import StateEntry

__all__ = [
    "AliasStatus",
    "Base",
    "DeliveryStatus",
    "StateEntry",
    "metadata",
]
