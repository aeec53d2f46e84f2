"""Serialized display of transient user notifications.

Notifications are appended to an unbounded FIFO queue without blocking the
caller. At most one notification is displayed at a time; it is dismissed
after its duration (or explicitly by the user), and dismissal always hands
control back to the queue so the next entry is shown.

Display itself is delegated to a NotificationSink supplied by the
presentation layer. The default sink writes notifications to the log.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 5000
DEFAULT_TICK_SECONDS = 0.1


class NotificationSeverity(str, Enum):
    """Visual severity of a notification."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Notification:
    """A transient user alert. Never persisted.

    Attributes:
        title: Short heading.
        message: Body text.
        severity: Visual severity.
        duration_ms: Display lifetime before auto-dismissal.
        id: Unique identifier, used for explicit dismissal.
    """

    title: str
    message: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    duration_ms: int = DEFAULT_DURATION_MS
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class NotificationSink(Protocol):
    """Presentation hook that renders and removes notifications."""

    def show(self, notification: Notification) -> None: ...

    def hide(self, notification: Notification) -> None: ...


_SEVERITY_LEVELS = {
    NotificationSeverity.INFO: logging.INFO,
    NotificationSeverity.SUCCESS: logging.INFO,
    NotificationSeverity.WARNING: logging.WARNING,
    NotificationSeverity.ERROR: logging.ERROR,
}


class LoggingNotificationSink:
    """Sink that writes each displayed notification to a logger."""

    def __init__(self, sink_logger: logging.Logger | None = None) -> None:
        self._logger = sink_logger or logging.getLogger("tempalias.notifications.display")

    def show(self, notification: Notification) -> None:
        self._logger.log(
            _SEVERITY_LEVELS[notification.severity],
            "[%s] %s: %s",
            notification.severity.value,
            notification.title,
            notification.message,
        )

    def hide(self, notification: Notification) -> None:
        pass


class NotificationScheduler:
    """Single-consumer queue that serializes notification display.

    Example:
        scheduler = NotificationScheduler(sink)
        scheduler.start()
        scheduler.notify("Success", "Alias created", NotificationSeverity.SUCCESS)
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        sink: NotificationSink | None = None,
        default_duration_ms: int = DEFAULT_DURATION_MS,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        self._sink: NotificationSink = sink or LoggingNotificationSink()
        self.default_duration_ms = default_duration_ms
        self.tick_seconds = tick_seconds
        self._pending: deque[Notification] = deque()
        self._current: Notification | None = None
        self._dismiss_handle: asyncio.TimerHandle | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def current(self) -> Notification | None:
        """The notification currently displayed, if any."""
        return self._current

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def notify(
        self,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        duration_ms: int | None = None,
    ) -> Notification:
        """Queue a notification for display. Never blocks.

        Returns:
            The queued notification.
        """
        notification = Notification(
            title=title,
            message=message,
            severity=severity,
            duration_ms=duration_ms if duration_ms is not None else self.default_duration_ms,
        )
        self._pending.append(notification)
        logger.debug(
            "Notification queued: id=%s, title=%s, pending=%d",
            notification.id,
            title,
            len(self._pending),
        )
        self._dispatch_next()
        return notification

    def dismiss(self, notification_id: str | None = None) -> bool:
        """Dismiss the displayed notification.

        Args:
            notification_id: Only dismiss if this notification is displayed.
                None dismisses whatever is displayed.

        Returns:
            True if a notification was dismissed.
        """
        current = self._current
        if current is None or (notification_id is not None and current.id != notification_id):
            return False

        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        self._current = None

        try:
            self._sink.hide(current)
        except Exception:
            logger.exception("Notification sink failed to hide: id=%s", current.id)

        self._dispatch_next()
        return True

    def _dispatch_next(self) -> Notification | None:
        """Display the next queued notification if nothing is displayed."""
        if self._current is not None or not self._pending:
            return None

        notification = self._pending.popleft()
        self._current = notification
        try:
            self._sink.show(notification)
        except Exception:
            logger.exception("Notification sink failed to show: id=%s", notification.id)

        self._arm_dismissal()
        return notification

    def _arm_dismissal(self) -> None:
        """Schedule auto-dismissal of the current notification.

        Without a running loop the dispatch loop arms it on its next tick.
        """
        if self._current is None or self._dismiss_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        notification_id = self._current.id
        self._dismiss_handle = loop.call_later(
            self._current.duration_ms / 1000,
            self._auto_dismiss,
            notification_id,
        )

    def _auto_dismiss(self, notification_id: str) -> None:
        self._dismiss_handle = None
        try:
            self.dismiss(notification_id)
        except Exception:
            logger.exception("Auto-dismiss failed: id=%s", notification_id)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Dispatch loop: show the next notification whenever none is displayed."""
        logger.debug("Notification dispatcher starting: tick=%ss", self.tick_seconds)
        while not shutdown_event.is_set():
            try:
                if self._current is None:
                    self._dispatch_next()
                else:
                    self._arm_dismissal()
            except Exception:
                logger.exception("Error in notification dispatch loop")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.tick_seconds)

        logger.debug("Notification dispatcher stopped")

    def start(self) -> None:
        """Start the dispatch loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._shutdown_event))

    async def stop(self) -> None:
        """Stop the dispatch loop. Queued notifications are kept."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
