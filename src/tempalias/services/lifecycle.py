"""Alias lifecycle manager.

This module owns the alias collection (domain -> aliases in creation order)
and every status transition:
- Creation with a fixed validity window (4 minutes by default)
- Monotonic ACTIVE -> EXPIRED transitions, pushed by the deletion timer
  and recomputed before every status-dependent read
- Bulk purge of expired aliases with best-effort remote deletion

The whole collection is persisted after every mutation. Mutations never
await between changing the collection and persisting it, so scheduled
callbacks cannot observe a partial write.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, TypeAdapter, model_validator

from tempalias.db.models.base import AliasStatus
from tempalias.services.events import StaleView, ViewEvents
from tempalias.services.provider_client import ProviderError, ProviderNotFoundError
from tempalias.services.storage import (
    StateStore,
    StorageError,
    StorageKey,
    load_json_slot,
    save_json_slot,
)
from tempalias.worker.deletion import DeletionScheduler

if TYPE_CHECKING:
    from tempalias.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)

DEFAULT_ALIAS_TTL = timedelta(minutes=4)

RANDOM_NAME_LENGTH = 10
RANDOM_NAME_ALPHABET = string.ascii_lowercase + string.digits

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ALIAS_NAME_PATTERN = re.compile(r"^[a-z0-9._-]+$")


class AliasRecord(BaseModel):
    """A provider alias created by this client.

    Attributes:
        name: Local part of the alias address.
        domain: Provider domain of the alias.
        forward_target: Address mail is forwarded to.
        created_at: Creation time.
        expires_at: End of the validity window.
        owner_device_id: Device identity that created the alias; used for
            log attribution only, never for security.
        remote_id: Identifier assigned by the provider.
        status: Lifecycle status.
    """

    name: str
    domain: str
    forward_target: str
    created_at: datetime
    expires_at: datetime
    owner_device_id: str
    remote_id: str
    status: AliasStatus = AliasStatus.ACTIVE

    @model_validator(mode="after")
    def validate_window(self) -> Self:
        if self.expires_at <= self.created_at:
            msg = "expires_at must be after created_at"
            raise ValueError(msg)
        return self

    @property
    def address(self) -> str:
        return f"{self.name}@{self.domain}"

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at

    def time_remaining(self, now: datetime) -> timedelta:
        """Time left in the validity window, never negative."""
        return max(self.expires_at - now, timedelta(0))


_collection_adapter: TypeAdapter[dict[str, list[AliasRecord]]] = TypeAdapter(
    dict[str, list[AliasRecord]]
)


class AliasFilter(str, Enum):
    """Status filter for alias listings."""

    ALL = "all"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class PurgeResult:
    """Outcome of a bulk purge of expired aliases.

    Attributes:
        deleted_count: Remote deletions that succeeded, or found the alias
            already gone.
        failed_count: Remote deletions that failed.
    """

    deleted_count: int
    failed_count: int

    @property
    def removed_count(self) -> int:
        """Local records removed (always every expired record)."""
        return self.deleted_count + self.failed_count


@dataclass(frozen=True, slots=True)
class DashboardCounts:
    """Alias counters for one domain."""

    total: int
    active: int
    expired: int


class AliasValidationError(Exception):
    """Raised when alias input is rejected before any remote call."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class InvalidForwardTargetError(AliasValidationError):
    """Forward target is malformed or on the alias's own domain."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="forward_target")


class InvalidAliasNameError(AliasValidationError):
    """Alias name contains characters the provider does not accept."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid alias name: {name!r}", field="name")


class AliasExistsError(AliasValidationError):
    """An alias with the same (domain, name) is already tracked."""

    def __init__(self, domain: str, name: str) -> None:
        super().__init__(f"Alias already exists: {name}@{domain}", field="name")


def generate_alias_name() -> str:
    """Generate a random 10-character alias name."""
    return "".join(secrets.choice(RANDOM_NAME_ALPHABET) for _ in range(RANDOM_NAME_LENGTH))


def validate_forward_target(forward_target: str, domain: str | None = None) -> str:
    """Validate a forward address and return it stripped.

    Raises:
        InvalidForwardTargetError: Malformed address, or its domain equals
            ``domain``.
    """
    target = forward_target.strip()
    if not EMAIL_PATTERN.match(target):
        msg = f"Invalid forward address: {forward_target!r}"
        raise InvalidForwardTargetError(msg)
    if domain is not None and target.rsplit("@", 1)[1].lower() == domain.lower():
        raise InvalidForwardTargetError("Cannot forward to your own domain email")
    return target


def format_remaining(remaining: timedelta) -> str:
    """Format a remaining validity window as ``"3m 12s"`` or ``"Expired"``."""
    seconds = int(remaining.total_seconds())
    if seconds <= 0:
        return "Expired"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s"


class AliasLifecycleService:
    """Owns alias records, their expiry and their status transitions.

    The deletion scheduler is created and owned by this service and only
    ever refers back to records by (domain, name).

    Example:
        service = AliasLifecycleService(store, device_id="device_1")
        service.bind_client(client)
        record = await service.create_alias("a1b2c3", "me@gmail.com", "example.com")
        active = service.list_aliases("example.com", AliasFilter.ACTIVE)
    """

    def __init__(
        self,
        store: StateStore,
        device_id: str,
        *,
        client: ProviderClient | None = None,
        ttl: timedelta = DEFAULT_ALIAS_TTL,
        events: ViewEvents | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl <= timedelta(0):
            msg = "Alias TTL must be positive"
            raise ValueError(msg)

        self._store = store
        self.device_id = device_id
        self.client = client
        self.ttl = ttl
        self.events = events or ViewEvents()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._collection: dict[str, list[AliasRecord]] = load_json_slot(
            store, StorageKey.ALIASES, _collection_adapter, {}
        )
        self.deletion_scheduler = DeletionScheduler(self)

    def now(self) -> datetime:
        return self._clock()

    def bind_client(self, client: ProviderClient | None) -> None:
        """Attach (or detach, with None) the provider client of the session."""
        self.client = client

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist(self) -> None:
        save_json_slot(self._store, StorageKey.ALIASES, _collection_adapter, self._collection)

    async def _discard_remote(self, client: ProviderClient, domain: str, name: str) -> None:
        try:
            await client.delete_alias(domain, name)
        except ProviderError as e:
            logger.warning(
                "Failed to remove unsaved alias at provider: alias=%s@%s, error=%s",
                name,
                domain,
                e.message,
            )
        except Exception:
            logger.exception(
                "Unexpected error removing unsaved alias at provider: alias=%s@%s",
                name,
                domain,
            )

    def domains(self) -> list[str]:
        return list(self._collection)

    def get_alias(self, domain: str, name: str) -> AliasRecord | None:
        for record in self._collection.get(domain, []):
            if record.name == name:
                return record
        return None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_alias(self, name: str, forward_target: str, domain: str) -> AliasRecord:
        """Create an alias remotely, then track it locally and arm its deletion.

        Args:
            name: Alias local part.
            forward_target: Address to forward to; must not be on ``domain``.
            domain: Provider domain.

        Returns:
            The new ACTIVE record.

        Raises:
            AliasValidationError: Input rejected; no remote call was made.
            ProviderError: The provider rejected the alias; nothing is recorded.
            StorageError: The record could not be saved; the remote alias is
                deleted again and nothing is recorded.
        """
        alias_name = name.strip().lower()
        if not alias_name or not ALIAS_NAME_PATTERN.match(alias_name):
            raise InvalidAliasNameError(name)
        target = validate_forward_target(forward_target, domain)
        if self.get_alias(domain, alias_name) is not None:
            raise AliasExistsError(domain, alias_name)
        if self.client is None:
            msg = "No provider session; log in before creating aliases"
            raise RuntimeError(msg)

        client = self.client
        created = await client.create_alias(domain, alias_name, target)

        if self.get_alias(domain, alias_name) is not None:
            raise AliasExistsError(domain, alias_name)

        now = self.now()
        record = AliasRecord(
            name=alias_name,
            domain=domain,
            forward_target=target,
            created_at=now,
            expires_at=now + self.ttl,
            owner_device_id=self.device_id,
            remote_id=created.alias_remote_id or str(int(now.timestamp() * 1000)),
        )
        aliases = self._collection.setdefault(domain, [])
        aliases.append(record)
        try:
            self._persist()
        except StorageError:
            aliases.remove(record)
            logger.error(
                "Alias could not be saved, removing it at provider: alias=%s",
                record.address,
            )
            await self._discard_remote(client, domain, alias_name)
            raise

        logger.info(
            "Alias created: alias=%s, forward=%s, expires_at=%s",
            record.address,
            target,
            record.expires_at.isoformat(),
        )

        self.deletion_scheduler.arm(domain, alias_name, record.expires_at)
        self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD)
        return record

    def expire_alias(self, domain: str, name: str) -> bool:
        """Flip one alias to EXPIRED, looked up by key.

        Returns:
            True if the status changed; False if the alias is gone or
            already expired.
        """
        record = self.get_alias(domain, name)
        if record is None or record.status is AliasStatus.EXPIRED:
            return False

        record.status = AliasStatus.EXPIRED
        self._persist()
        logger.info("Alias expired: alias=%s", record.address)
        self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD, StaleView.CODES)
        return True

    def recompute_statuses(self, domain: str) -> int:
        """Set statuses from expiry times. Idempotent.

        Only ACTIVE -> EXPIRED transitions are made; records are never
        resurrected.

        Returns:
            Number of records that changed.
        """
        now = self.now()
        changed = 0
        for record in self._collection.get(domain, []):
            if record.status is AliasStatus.ACTIVE and record.is_past_expiry(now):
                record.status = AliasStatus.EXPIRED
                changed += 1

        if changed:
            self._persist()
            logger.debug("Statuses recomputed: domain=%s, expired=%d", domain, changed)
            self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD)
        return changed

    def remove_alias(self, domain: str, name: str) -> bool:
        """Remove a record locally and cancel its timer.

        Returns:
            True if a record was removed.
        """
        records = self._collection.get(domain, [])
        remaining = [record for record in records if record.name != name]
        if len(remaining) == len(records):
            return False

        self.deletion_scheduler.disarm(domain, name)
        self._collection[domain] = remaining
        self._persist()
        logger.info("Alias removed locally: alias=%s@%s", name, domain)
        self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD)
        return True

    async def purge_expired(self, domain: str) -> PurgeResult:
        """Delete every expired alias remotely and drop them locally.

        Each remote deletion is attempted independently; failures are
        counted, not raised. Expired records are removed locally whatever
        the remote outcome.
        """
        self.recompute_statuses(domain)
        expired = [
            record
            for record in self._collection.get(domain, [])
            if record.status is AliasStatus.EXPIRED
        ]
        if not expired:
            return PurgeResult(deleted_count=0, failed_count=0)
        client = self.client
        if client is None:
            msg = "No provider session; log in before purging aliases"
            raise RuntimeError(msg)

        deleted = 0
        failed = 0
        for record in expired:
            try:
                await client.delete_alias(domain, record.name)
                deleted += 1
            except ProviderNotFoundError:
                # Already removed by its deletion timer
                deleted += 1
            except ProviderError as e:
                failed += 1
                logger.warning(
                    "Purge could not delete alias at provider: alias=%s, error=%s",
                    record.address,
                    e.message,
                )
            except Exception:
                failed += 1
                logger.exception(
                    "Unexpected error purging alias at provider: alias=%s", record.address
                )

        purged = {record.name for record in expired}
        for name in purged:
            self.deletion_scheduler.disarm(domain, name)
        self._collection[domain] = [
            record for record in self._collection.get(domain, []) if record.name not in purged
        ]
        self._persist()

        logger.info(
            "Expired aliases purged: domain=%s, deleted=%d, failed=%d",
            domain,
            deleted,
            failed,
        )
        self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD)
        return PurgeResult(deleted_count=deleted, failed_count=failed)

    def rearm_active(self, domain: str) -> int:
        """Arm deletion timers for this device's ACTIVE aliases.

        Used when a session starts; aliases already past expiry fire at once.

        Returns:
            Number of aliases armed.
        """
        armed = 0
        for record in list(self._collection.get(domain, [])):
            if record.status is AliasStatus.ACTIVE and record.owner_device_id == self.device_id:
                self.deletion_scheduler.arm(domain, record.name, record.expires_at)
                armed += 1
        return armed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_aliases(
        self,
        domain: str,
        status_filter: AliasFilter = AliasFilter.ALL,
        search_term: str | None = None,
    ) -> list[AliasRecord]:
        """List aliases of a domain, newest first.

        Args:
            domain: Provider domain.
            status_filter: Restrict to active or expired aliases.
            search_term: Case-insensitive substring of the address or
                forward target.
        """
        self.recompute_statuses(domain)
        records = list(self._collection.get(domain, []))

        if status_filter is AliasFilter.ACTIVE:
            records = [r for r in records if r.status is AliasStatus.ACTIVE]
        elif status_filter is AliasFilter.EXPIRED:
            records = [r for r in records if r.status is AliasStatus.EXPIRED]

        term = (search_term or "").strip().lower()
        if term:
            records = [
                r
                for r in records
                if term in r.address.lower() or term in r.forward_target.lower()
            ]

        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def recent_aliases(self, domain: str, limit: int = 5) -> list[AliasRecord]:
        return self.list_aliases(domain)[:limit]

    def dashboard(self, domain: str) -> DashboardCounts:
        self.recompute_statuses(domain)
        records = self._collection.get(domain, [])
        active = sum(1 for r in records if r.status is AliasStatus.ACTIVE)
        return DashboardCounts(total=len(records), active=active, expired=len(records) - active)

    def owned_names(self, domain: str) -> set[str]:
        """Names of this device's aliases on a domain, any status."""
        return {
            record.name
            for record in self._collection.get(domain, [])
            if record.owner_device_id == self.device_id
        }
