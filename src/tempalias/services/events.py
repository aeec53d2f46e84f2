"""Stale-view signals for the presentation layer.

The engine never renders anything. When state behind a view changes
(aliases expire, logs arrive, codes are found) it marks that view stale and
every subscribed listener is told which views to redraw.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class StaleView(str, Enum):
    """Derived views the presentation layer may need to redraw."""

    ALIASES = "aliases"
    DASHBOARD = "dashboard"
    LOGS = "logs"
    CODES = "codes"


ViewListener = Callable[[frozenset[StaleView]], None]


class ViewEvents:
    """Fan-out of stale-view signals to registered listeners.

    Listener failures are logged and never reach the caller, since
    signals are raised from timer and poll callbacks.
    """

    def __init__(self) -> None:
        self._listeners: list[ViewListener] = []

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that unsubscribes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def mark_stale(self, *views: StaleView) -> None:
        if not views:
            return
        stale = frozenset(views)
        for listener in list(self._listeners):
            try:
                listener(stale)
            except Exception:
                logger.exception(
                    "View listener failed: views=%s",
                    sorted(view.value for view in stale),
                )
