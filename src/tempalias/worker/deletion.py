"""Per-alias deletion timers.

One timer per alias key (domain, name). When a timer fires it:
- starts the remote deletion (fire-and-forget, failure logged, never retried)
- re-reads the record by key through the lifecycle manager and flips it to
  EXPIRED (a record that was already removed makes this a no-op)
- removes its own timer entry

The scheduler never holds a record, only its key, so it cannot act on
stale data after a deletion or logout. disarm_all() cancels every timer
and every in-flight remote deletion.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, NamedTuple

from tempalias.services.provider_client import ProviderError

if TYPE_CHECKING:
    from datetime import datetime

    from tempalias.services.lifecycle import AliasLifecycleService
    from tempalias.services.provider_client import ProviderClient

logger = logging.getLogger(__name__)


class AliasKey(NamedTuple):
    """Composite key of an alias within the collection."""

    domain: str
    name: str


class DeletionScheduler:
    """Arms, re-arms and cancels deletion timers for aliases.

    Example:
        scheduler.arm("example.com", "a1b2c3", record.expires_at)
        ...
        scheduler.disarm_all()  # on logout
    """

    def __init__(self, manager: AliasLifecycleService) -> None:
        self._manager = manager
        self._timers: dict[AliasKey, asyncio.TimerHandle] = {}
        self._deletions: set[asyncio.Task[None]] = set()

    @property
    def armed_keys(self) -> frozenset[AliasKey]:
        return frozenset(self._timers)

    def is_armed(self, domain: str, name: str) -> bool:
        return AliasKey(domain, name) in self._timers

    def arm(self, domain: str, name: str, expires_at: datetime) -> None:
        """Schedule deletion of an alias at its expiry time.

        Re-arming a key cancels its existing timer first. An expiry that
        has already passed fires immediately.
        """
        key = AliasKey(domain, name)
        self._cancel_timer(key)

        delay = (expires_at - self._manager.now()).total_seconds()
        if delay <= 0:
            logger.info("Alias already past expiry, deleting now: alias=%s@%s", name, domain)
            self._fire(key)
            return

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)
        logger.debug("Deletion armed: alias=%s@%s, delay=%.1fs", name, domain, delay)

    def disarm(self, domain: str, name: str) -> bool:
        """Cancel the timer of one alias.

        Returns:
            True if a timer was armed.
        """
        return self._cancel_timer(AliasKey(domain, name))

    def disarm_all(self) -> int:
        """Cancel every timer and every in-flight remote deletion.

        Returns:
            Number of timers cancelled.
        """
        count = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for task in list(self._deletions):
            task.cancel()
        self._deletions.clear()

        if count:
            logger.info("Deletion timers disarmed: count=%d", count)
        return count

    def _cancel_timer(self, key: AliasKey) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _fire(self, key: AliasKey) -> None:
        """Timer callback. Traps every failure so the loop keeps scheduling."""
        self._timers.pop(key, None)
        try:
            self._start_remote_deletion(key)
            if not self._manager.expire_alias(key.domain, key.name):
                logger.debug(
                    "Deletion fired for unknown or already expired alias: alias=%s@%s",
                    key.name,
                    key.domain,
                )
        except Exception:
            logger.exception("Deletion timer failed: alias=%s@%s", key.name, key.domain)

    def _start_remote_deletion(self, key: AliasKey) -> None:
        client = self._manager.client
        if client is None:
            logger.warning(
                "No provider session, skipping remote deletion: alias=%s@%s",
                key.name,
                key.domain,
            )
            return

        task = asyncio.get_running_loop().create_task(self._delete_remote(client, key))
        self._deletions.add(task)
        task.add_done_callback(self._deletions.discard)

    async def _delete_remote(self, client: ProviderClient, key: AliasKey) -> None:
        try:
            await client.delete_alias(key.domain, key.name)
        except ProviderError as e:
            logger.warning(
                "Failed to delete alias at provider: alias=%s@%s, error=%s",
                key.name,
                key.domain,
                e.message,
            )
        except Exception:
            logger.exception(
                "Unexpected error deleting alias at provider: alias=%s@%s",
                key.name,
                key.domain,
            )
