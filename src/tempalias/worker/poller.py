"""Delivery-log polling.

Fetches the delivery logs of a domain, keeps only those addressed to
aliases owned by this device, and feeds them to the code registry:
- On demand via refresh()
- Automatically every poll interval while enabled and a session is active

The automatic mode is a persisted user preference. The loop is cancelled
on logout before any state is cleared.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from tempalias.db.models.base import DeliveryStatus
from tempalias.services.events import StaleView
from tempalias.services.notifications import NotificationSeverity
from tempalias.services.storage import StorageKey

if TYPE_CHECKING:
    from tempalias.services.code_registry import CodeRegistry, ConfirmationCode
    from tempalias.services.lifecycle import AliasLifecycleService
    from tempalias.services.notifications import NotificationScheduler
    from tempalias.services.provider_client import MailLog
    from tempalias.services.storage import StateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 40.0

FAILED_STATUSES = frozenset({DeliveryStatus.REFUSED, DeliveryStatus.FAILED})
PENDING_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.QUEUED})


class LogFilter(str, Enum):
    """Filters for the delivery-log view."""

    ALL = "all"
    DELIVERED = "delivered"
    FAILED = "failed"
    PENDING = "pending"
    HAS_CODE = "has_code"


@dataclass(frozen=True)
class DeviceLogs:
    """Logs of one poll, filtered to this device's aliases.

    Attributes:
        domain: Polled domain.
        logs: Logs addressed to aliases owned by this device.
        total_fetched: Number of logs the provider returned before filtering.
    """

    domain: str
    logs: list[MailLog] = field(default_factory=list)
    total_fetched: int = 0


class LogPoller:
    """Polls delivery logs and routes them to the code registry.

    Example:
        poller = LogPoller(manager, registry, notifier, store=store)
        await poller.refresh("example.com")
        poller.start("example.com")  # automatic mode
        poller.stop()
    """

    def __init__(
        self,
        manager: AliasLifecycleService,
        registry: CodeRegistry,
        notifier: NotificationScheduler,
        *,
        store: StateStore,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._manager = manager
        self._registry = registry
        self._notifier = notifier
        self._store = store
        self.interval = interval
        self._latest: list[MailLog] = []
        self._task: asyncio.Task[None] | None = None
        self._shutdown_event: asyncio.Event | None = None

    # -------------------------------------------------------------------------
    # Preference
    # -------------------------------------------------------------------------

    @property
    def auto_enabled(self) -> bool:
        """Persisted auto-poll preference, enabled unless switched off."""
        return self._store.get(StorageKey.AUTO_POLL.value) != "false"

    def set_auto_poll(self, enabled: bool, domain: str | None = None) -> None:
        """Persist the preference and start or stop the loop accordingly.

        Args:
            enabled: New preference.
            domain: Domain to poll when enabling; the loop only starts
                when one is given.
        """
        self._store.set(StorageKey.AUTO_POLL.value, "true" if enabled else "false")
        logger.info("Auto-poll %s", "enabled" if enabled else "disabled")
        if not enabled:
            self.stop()
        elif domain is not None:
            self.start(domain)

    def toggle_auto_poll(self, domain: str | None = None) -> bool:
        """Flip the preference.

        Returns:
            The new preference.
        """
        enabled = not self.auto_enabled
        self.set_auto_poll(enabled, domain)
        return enabled

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def poll_once(self, domain: str) -> DeviceLogs:
        """Fetch a domain's logs and keep those of this device's aliases.

        Raises:
            ProviderError: The fetch failed.
            RuntimeError: No provider session is bound.
        """
        client = self._manager.client
        if client is None:
            msg = "No provider session; log in before loading logs"
            raise RuntimeError(msg)

        logs = await client.fetch_logs(domain)
        owned = self._manager.owned_names(domain)
        device_logs = [log for log in logs if log.recipient_local_part in owned]

        logger.debug(
            "Logs polled: domain=%s, fetched=%d, device=%d",
            domain,
            len(logs),
            len(device_logs),
        )
        return DeviceLogs(domain=domain, logs=device_logs, total_fetched=len(logs))

    async def refresh(self, domain: str, *, automatic: bool = False) -> DeviceLogs:
        """Poll once and route the result to the registry and the user.

        Args:
            domain: Domain to poll.
            automatic: Quiet mode used by the interval loop; only new
                logs are announced.

        Returns:
            The device-filtered logs of this poll.
        """
        result = await self.poll_once(domain)

        if automatic:
            seen = {log.id for log in self._latest if log.id is not None}
            new_logs = [log for log in result.logs if log.id is None or log.id not in seen]
            if not new_logs:
                return result
        else:
            new_logs = result.logs

        self._latest = list(result.logs)
        new_codes = self._registry.ingest(result.logs)
        self._announce_codes(new_codes)

        stale = [StaleView.LOGS, StaleView.ALIASES]
        if new_codes:
            stale.append(StaleView.CODES)
        self._manager.events.mark_stale(*stale)

        if automatic:
            self._notifier.notify("Logs", f"Auto-loaded {len(new_logs)} new log entries")
        elif result.logs:
            self._notifier.notify(
                "Success",
                f"Loaded {len(result.logs)} log entries from this device",
                NotificationSeverity.SUCCESS,
            )
        elif result.total_fetched:
            self._notifier.notify("Info", "No logs found for this device")
        else:
            self._notifier.notify("Info", "No logs found")
        return result

    def _announce_codes(self, new_codes: list[ConfirmationCode]) -> None:
        if len(new_codes) == 1:
            self._notifier.notify(
                "Code Detected",
                f"New confirmation code: {new_codes[0].code}",
                NotificationSeverity.SUCCESS,
            )
        elif new_codes:
            self._notifier.notify(
                "Code Detected",
                f"{len(new_codes)} new confirmation codes detected",
                NotificationSeverity.SUCCESS,
            )

    # -------------------------------------------------------------------------
    # Log view
    # -------------------------------------------------------------------------

    def list_logs(self, log_filter: LogFilter = LogFilter.ALL) -> list[MailLog]:
        """Latest device logs, newest first, optionally filtered."""
        logs = self._latest
        if log_filter is LogFilter.DELIVERED:
            logs = [log for log in logs if log.delivery_status is DeliveryStatus.DELIVERED]
        elif log_filter is LogFilter.FAILED:
            logs = [log for log in logs if log.delivery_status in FAILED_STATUSES]
        elif log_filter is LogFilter.PENDING:
            logs = [log for log in logs if log.delivery_status in PENDING_STATUSES]
        elif log_filter is LogFilter.HAS_CODE:
            matcher = self._registry.matcher
            logs = [log for log in logs if matcher.has_code(log.subject)]

        return sorted(
            logs,
            key=lambda log: log.created.timestamp() if log.created else 0.0,
            reverse=True,
        )

    def clear_logs(self) -> int:
        """Drop the loaded logs.

        Returns:
            Number of logs dropped.
        """
        count = len(self._latest)
        self._latest = []
        if count:
            self._manager.events.mark_stale(StaleView.LOGS)
        return count

    # -------------------------------------------------------------------------
    # Automatic mode
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, domain: str) -> None:
        """Start (or restart) the automatic poll loop for a domain."""
        self.stop()
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(domain, self._shutdown_event))
        logger.info("Auto-poll started: domain=%s, interval=%ss", domain, self.interval)

    def stop(self) -> None:
        """Cancel the automatic poll loop, including any poll in flight."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
            self._shutdown_event = None
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                logger.info("Auto-poll stopped")
            self._task = None

    async def _run(self, domain: str, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
            if shutdown_event.is_set():
                break
            if not self.auto_enabled or self._manager.client is None:
                continue
            try:
                await self.refresh(domain, automatic=True)
            except Exception as e:
                logger.exception("Auto-poll failed: domain=%s, error=%s", domain, e)
