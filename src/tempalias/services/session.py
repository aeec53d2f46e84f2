"""Session composition root.

An AliasSession wires one lifecycle manager, code registry, log poller and
notification scheduler around a single store and device identity, and
exposes the entry points used by the presentation layer:
- login/logout (credential verification, timer and loop teardown)
- alias creation and purge with user-facing notifications
- read-only accessors for aliases, codes, logs and dashboard counters

Logout cancels every deletion timer, the poll loop and the status loop
before the provider client is closed, so nothing scheduled can reach a
session whose credential no longer applies.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from tempalias.core.settings import get_settings
from tempalias.services.code_registry import CodeRegistry, ConfirmationCode
from tempalias.services.events import StaleView, ViewEvents
from tempalias.services.lifecycle import (
    AliasFilter,
    AliasLifecycleService,
    AliasRecord,
    AliasValidationError,
    DashboardCounts,
    InvalidForwardTargetError,
    PurgeResult,
    generate_alias_name,
    validate_forward_target,
)
from tempalias.services.notifications import NotificationScheduler, NotificationSeverity
from tempalias.services.provider_client import (
    SAME_DOMAIN_USER_MESSAGE,
    ProviderAuthError,
    ProviderClient,
    ProviderConfig,
    ProviderConnectionError,
    ProviderError,
)
from tempalias.services.storage import StorageKey
from tempalias.worker.poller import DeviceLogs, LogFilter, LogPoller
from tempalias.worker.scheduler import run_status_refresh_loop

if TYPE_CHECKING:
    from tempalias.core.config import Settings
    from tempalias.services.provider_client import MailLog
    from tempalias.services.storage import StateStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderConfig], ProviderClient]


class NotLoggedInError(Exception):
    """Raised when an entry point needs a session and none is active."""

    def __init__(self) -> None:
        super().__init__("Please login first")


def load_device_id(store: StateStore) -> str:
    """Return the persisted device identity, creating it on first use.

    The identity only scopes which aliases and logs belong to this client;
    it is not a security boundary.
    """
    device_id = store.get(StorageKey.DEVICE_ID.value)
    if device_id:
        return device_id

    device_id = f"device_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
    store.set(StorageKey.DEVICE_ID.value, device_id)
    logger.info("Generated device identity: device_id=%s", device_id)
    return device_id


def _provider_message(error: ProviderError) -> str:
    if error.message == SAME_DOMAIN_USER_MESSAGE:
        return error.message
    return f"API error: {error.message}"


class AliasSession:
    """One device's view of the lifecycle engine.

    Example:
        session = AliasSession(store)
        session.notifier.start()
        await session.login("sk_xxx", "example.com")
        record = await session.create_alias(forward_target="me@gmail.com")
        ...
        await session.logout()
    """

    def __init__(
        self,
        store: StateStore,
        settings: Settings | None = None,
        *,
        notifier: NotificationScheduler | None = None,
        events: ViewEvents | None = None,
        clock: Callable[[], datetime] | None = None,
        client_factory: ClientFactory = ProviderClient,
    ) -> None:
        self.settings = settings or get_settings()
        lifecycle = self.settings.lifecycle

        self._store = store
        self._client_factory = client_factory
        self.device_id = load_device_id(store)
        self.events = events or ViewEvents()
        self.notifier = notifier or NotificationScheduler(
            default_duration_ms=lifecycle.notification_duration_ms,
            tick_seconds=lifecycle.notification_tick_seconds,
        )
        self.manager = AliasLifecycleService(
            store,
            self.device_id,
            ttl=timedelta(seconds=lifecycle.alias_ttl_seconds),
            events=self.events,
            clock=clock,
        )
        self.registry = CodeRegistry(store, clock=clock)
        self.poller = LogPoller(
            self.manager,
            self.registry,
            self.notifier,
            store=store,
            interval=lifecycle.poll_interval_seconds,
        )

        self.domain: str | None = None
        self._client: ProviderClient | None = None
        self._status_event: asyncio.Event | None = None
        self._status_task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self._client is not None and self.domain is not None

    def _require_domain(self) -> str:
        if not self.is_active or self.domain is None:
            self.notifier.notify("Error", "Please login first", NotificationSeverity.ERROR)
            raise NotLoggedInError
        return self.domain

    # -------------------------------------------------------------------------
    # Login / logout
    # -------------------------------------------------------------------------

    async def login(self, api_key: str | None, domain: str) -> None:
        """Verify the credential and start the session.

        Args:
            api_key: Provider API key; falls back to the configured key.
            domain: Provider domain to manage.

        Raises:
            ValueError: Key or domain missing.
            ProviderAuthError: The provider rejected the key.
            ProviderError: The provider could not be reached.
        """
        domain = domain.strip()
        key = (api_key or "").strip()
        if not key and self.settings.provider.api_key is not None:
            key = self.settings.provider.api_key.get_secret_value()
        if not key or not domain:
            self.notifier.notify(
                "Error", "Please enter API key and domain name", NotificationSeverity.ERROR
            )
            msg = "API key and domain are required"
            raise ValueError(msg)

        if self.is_active:
            await self.logout(announce=False)

        client = self._client_factory(ProviderConfig.from_settings(self.settings.provider, key))
        await client.__aenter__()
        try:
            await client.get_account()
        except ProviderAuthError:
            await client.aclose()
            self.notifier.notify("Error", "Invalid API key or domain", NotificationSeverity.ERROR)
            raise
        except ProviderConnectionError:
            await client.aclose()
            self.notifier.notify(
                "Error",
                "Network error. Check your internet connection.",
                NotificationSeverity.ERROR,
            )
            raise
        except ProviderError as e:
            await client.aclose()
            self.notifier.notify("Error", _provider_message(e), NotificationSeverity.ERROR)
            raise

        self._client = client
        self.domain = domain
        self.manager.bind_client(client)

        armed = self.manager.rearm_active(domain)
        self.manager.recompute_statuses(domain)
        self._start_status_loop(domain)
        if self.poller.auto_enabled:
            self.poller.start(domain)

        logger.info(
            "Session started: domain=%s, device_id=%s, rearmed=%d",
            domain,
            self.device_id,
            armed,
        )
        self.events.mark_stale(StaleView.ALIASES, StaleView.DASHBOARD)
        self.notifier.notify("Success", "Login successful!", NotificationSeverity.SUCCESS)

    async def logout(self, *, announce: bool = True) -> None:
        """End the session.

        Timers and loops are cancelled synchronously before the client is
        closed and the session state cleared.
        """
        self.manager.deletion_scheduler.disarm_all()
        self.poller.stop()
        self._stop_status_loop()

        client = self._client
        domain = self.domain
        self.manager.bind_client(None)
        self._client = None
        self.domain = None

        if client is not None:
            await client.aclose()
            logger.info("Session ended: domain=%s", domain)
            if announce:
                self.notifier.notify(
                    "Success", "Logged out successfully", NotificationSeverity.SUCCESS
                )

    def _start_status_loop(self, domain: str) -> None:
        self._stop_status_loop()
        self._status_event = asyncio.Event()
        self._status_task = asyncio.create_task(
            run_status_refresh_loop(
                self.manager,
                domain,
                check_interval=self.settings.lifecycle.status_refresh_seconds,
                shutdown_event=self._status_event,
            )
        )

    def _stop_status_loop(self) -> None:
        if self._status_event is not None:
            self._status_event.set()
            self._status_event = None
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None

    async def close(self) -> None:
        """Log out and stop the notification dispatcher."""
        await self.logout(announce=False)
        with contextlib.suppress(Exception):
            await self.notifier.stop()

    # -------------------------------------------------------------------------
    # Forward target
    # -------------------------------------------------------------------------

    @property
    def forward_target(self) -> str | None:
        return self._store.get(StorageKey.FORWARD_TARGET.value) or None

    def set_forward_target(self, address: str) -> str:
        """Validate and save the default forward target.

        Raises:
            InvalidForwardTargetError: Malformed address.
        """
        try:
            target = validate_forward_target(address, self.domain)
        except InvalidForwardTargetError as e:
            self.notifier.notify("Error", e.message, NotificationSeverity.ERROR)
            raise
        self._store.set(StorageKey.FORWARD_TARGET.value, target)
        logger.info("Forward target saved: forward=%s", target)
        return target

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_alias(
        self,
        name: str | None = None,
        forward_target: str | None = None,
    ) -> AliasRecord:
        """Create an alias on the session domain.

        A missing name is replaced by a random one; a missing forward target
        falls back to the saved one. A new forward target is saved once the
        alias is created.

        Raises:
            NotLoggedInError: No active session.
            AliasValidationError: Input rejected.
            ProviderError: The provider rejected the alias.
        """
        domain = self._require_domain()

        target = (forward_target or "").strip() or self.forward_target
        if not target:
            self.notifier.notify("Error", "Please enter forward email", NotificationSeverity.ERROR)
            raise InvalidForwardTargetError("Forward address is required")
        alias_name = (name or "").strip() or generate_alias_name()

        try:
            record = await self.manager.create_alias(alias_name, target, domain)
        except AliasValidationError as e:
            self.notifier.notify("Error", e.message, NotificationSeverity.ERROR)
            raise
        except ProviderError as e:
            self.notifier.notify("Error", _provider_message(e), NotificationSeverity.ERROR)
            raise

        if record.forward_target != self.forward_target:
            self._store.set(StorageKey.FORWARD_TARGET.value, record.forward_target)

        self.notifier.notify(
            "Success", f"Alias created: {record.address}", NotificationSeverity.SUCCESS
        )
        return record

    async def purge_expired(self) -> PurgeResult:
        """Purge expired aliases of the session domain and report the counts."""
        domain = self._require_domain()
        result = await self.manager.purge_expired(domain)

        if result.removed_count == 0:
            self.notifier.notify("Info", "No expired aliases to delete")
        else:
            self.notifier.notify(
                "Success",
                f"{result.deleted_count} expired aliases deleted. {result.failed_count} failed.",
                NotificationSeverity.SUCCESS,
            )
        return result

    async def load_logs(self) -> DeviceLogs:
        """Fetch this device's logs now.

        Raises:
            ProviderError: The fetch failed (also surfaced as a notification).
        """
        domain = self._require_domain()
        try:
            return await self.poller.refresh(domain)
        except ProviderError as e:
            self.notifier.notify("Error", _provider_message(e), NotificationSeverity.ERROR)
            raise

    def toggle_auto_poll(self) -> bool:
        """Flip the persisted auto-poll preference; restarts or stops the loop."""
        enabled = self.poller.toggle_auto_poll(self.domain if self.is_active else None)
        self.notifier.notify(
            "Auto Load",
            "Auto-load enabled" if enabled else "Auto-load disabled",
            NotificationSeverity.INFO,
        )
        return enabled

    def clear_codes(self) -> int:
        count = self.registry.clear()
        self.events.mark_stale(StaleView.CODES)
        self.notifier.notify("Codes", "Confirmation codes cleared", NotificationSeverity.SUCCESS)
        return count

    def clear_logs(self) -> int:
        count = self.poller.clear_logs()
        if count:
            self.notifier.notify("Logs", "Logs cleared successfully", NotificationSeverity.SUCCESS)
        else:
            self.notifier.notify("Logs", "No logs to clear")
        return count

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_aliases(
        self,
        status_filter: AliasFilter = AliasFilter.ALL,
        search_term: str | None = None,
    ) -> list[AliasRecord]:
        domain = self._require_domain()
        return self.manager.list_aliases(domain, status_filter, search_term)

    def dashboard(self) -> DashboardCounts:
        return self.manager.dashboard(self._require_domain())

    def list_codes(self) -> list[ConfirmationCode]:
        return self.registry.list_codes()

    def list_logs(self, log_filter: LogFilter = LogFilter.ALL) -> list[MailLog]:
        return self.poller.list_logs(log_filter)
