"""Background status recomputation.

Deletion timers flip an alias to EXPIRED when they fire, but timers can be
late, cancelled or lost with a previous session. This loop recomputes every
status on a fixed interval so "expired" is guaranteed to become visible
eventually, whatever happened to the timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tempalias.services.lifecycle import AliasLifecycleService

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 1.0


async def run_status_refresh_loop(
    manager: AliasLifecycleService,
    domain: str,
    check_interval: float = DEFAULT_REFRESH_INTERVAL,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Recompute alias statuses of a domain until shutdown is requested.

    Args:
        manager: Lifecycle manager owning the aliases.
        domain: Domain whose aliases are refreshed.
        check_interval: Seconds between recomputations.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(
        "Status refresh starting: domain=%s, check_interval=%ss",
        domain,
        check_interval,
    )

    while not shutdown_event.is_set():
        try:
            changed = manager.recompute_statuses(domain)
            if changed:
                logger.debug("Status refresh expired %d aliases", changed)
        except Exception as e:
            logger.exception("Error in status refresh loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=check_interval,
            )

    logger.info("Status refresh stopped: domain=%s", domain)
