"""Tests for per-alias deletion timers.

Tests run on the real event loop with sub-second validity windows.

Tests cover:
- Timer firing: remote deletion plus EXPIRED flip
- Re-arming cancels the previous timer (one deletion per alias)
- Timer races with local removal
- disarm_all() on logout
- Failures trapped inside the timer callback
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from tempalias.db.models.base import AliasStatus
from tempalias.services.lifecycle import AliasLifecycleService
from tempalias.services.provider_client import ProviderError
from tempalias.worker.deletion import AliasKey, DeletionScheduler
from tests.factories import DOMAIN, FORWARD

SHORT_TTL = timedelta(milliseconds=50)


@pytest.fixture
def service(store, provider_client):
    service = AliasLifecycleService(store, "device_1", client=provider_client, ttl=SHORT_TTL)
    yield service
    service.deletion_scheduler.disarm_all()


class TestFiring:
    """Tests for timers that run to completion."""

    @pytest.mark.asyncio
    async def test_fire_deletes_and_expires(self, service, provider_client):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        await asyncio.sleep(0.2)

        provider_client.delete_alias.assert_awaited_once_with(DOMAIN, "a1b2c3")
        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.EXPIRED
        assert not service.deletion_scheduler.is_armed(DOMAIN, "a1b2c3")

    @pytest.mark.asyncio
    async def test_rearm_fires_once(self, service, provider_client):
        record = await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        scheduler = service.deletion_scheduler

        scheduler.arm(DOMAIN, "a1b2c3", record.expires_at)
        scheduler.arm(DOMAIN, "a1b2c3", record.expires_at)
        await asyncio.sleep(0.2)

        assert provider_client.delete_alias.await_count == 1

    @pytest.mark.asyncio
    async def test_past_expiry_fires_immediately(self, service, provider_client):
        record = await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        scheduler = service.deletion_scheduler
        scheduler.disarm(DOMAIN, "a1b2c3")

        scheduler.arm(DOMAIN, "a1b2c3", record.created_at - timedelta(seconds=1))

        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.EXPIRED
        assert not scheduler.is_armed(DOMAIN, "a1b2c3")
        await asyncio.sleep(0.01)
        provider_client.delete_alias.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remote_failure_still_expires(self, service, provider_client, caplog):
        provider_client.delete_alias.side_effect = ProviderError("Server error", 500)

        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        await asyncio.sleep(0.2)

        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.EXPIRED
        assert "Failed to delete alias at provider" in caplog.text
        assert provider_client.delete_alias.await_count == 1

    @pytest.mark.asyncio
    async def test_names_with_separators_do_not_collide(self, service, provider_client):
        await service.create_alias("a.b", FORWARD, DOMAIN)
        await service.create_alias("a", FORWARD, "b." + DOMAIN)

        assert service.deletion_scheduler.armed_keys == {
            AliasKey(DOMAIN, "a.b"),
            AliasKey("b." + DOMAIN, "a"),
        }


class TestRaces:
    """Tests for timers racing with local state changes."""

    @pytest.mark.asyncio
    async def test_removed_record_is_noop(self, service, provider_client):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        # Drop the record behind the scheduler's back
        service._collection[DOMAIN] = []

        await asyncio.sleep(0.2)

        assert service.get_alias(DOMAIN, "a1b2c3") is None

    @pytest.mark.asyncio
    async def test_remove_alias_cancels_timer(self, service, provider_client):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        service.remove_alias(DOMAIN, "a1b2c3")

        await asyncio.sleep(0.2)

        provider_client.delete_alias.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callback_failure_is_trapped(self, caplog):
        manager = MagicMock()
        manager.now.return_value = datetime(2026, 1, 15, tzinfo=UTC)
        manager.client = None
        manager.expire_alias.side_effect = RuntimeError("boom")
        scheduler = DeletionScheduler(manager)

        scheduler.arm(DOMAIN, "a1b2c3", datetime(2026, 1, 14, tzinfo=UTC))

        assert "Deletion timer failed" in caplog.text


class TestDisarm:
    """Tests for cancelling timers."""

    @pytest.mark.asyncio
    async def test_disarm_all_prevents_deletion_and_flip(self, store, provider_client, clock):
        service = AliasLifecycleService(
            store, "device_1", client=provider_client, ttl=timedelta(seconds=10), clock=clock
        )
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        # Put the alias 50ms from expiry on the loop clock
        service.deletion_scheduler.arm(DOMAIN, "a1b2c3", clock() + timedelta(milliseconds=50))

        assert service.deletion_scheduler.disarm_all() == 1
        clock.advance(11)
        await asyncio.sleep(0.2)

        provider_client.delete_alias.assert_not_awaited()
        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_disarm_all_cancels_inflight_deletion(self, service, provider_client):
        started = asyncio.Event()

        async def slow_delete(domain, name):
            started.set()
            await asyncio.sleep(10)

        provider_client.delete_alias.side_effect = slow_delete
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        await asyncio.wait_for(started.wait(), timeout=1)

        service.deletion_scheduler.disarm_all()
        await asyncio.sleep(0)

        assert not service.deletion_scheduler._deletions

    def test_disarm_unknown_key(self, service):
        assert not service.deletion_scheduler.disarm(DOMAIN, "missing")
