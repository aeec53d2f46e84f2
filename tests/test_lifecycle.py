"""Tests for the alias lifecycle manager.

Tests cover:
- Alias creation, validation and fail-closed behavior
- Status recomputation (monotonic ACTIVE -> EXPIRED)
- Bulk purge with partial remote failure
- Listing, filtering and dashboard counters
- Persistence and corruption recovery
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from tempalias.db.models.base import AliasStatus
from tempalias.services.events import StaleView, ViewEvents
from tempalias.services.lifecycle import (
    ALIAS_NAME_PATTERN,
    AliasExistsError,
    AliasFilter,
    AliasLifecycleService,
    AliasRecord,
    InvalidAliasNameError,
    InvalidForwardTargetError,
    format_remaining,
    generate_alias_name,
    validate_forward_target,
)
from tempalias.services.provider_client import (
    CreatedAlias,
    ProviderError,
    ProviderNotFoundError,
)
from tempalias.services.storage import MemoryStateStore, StorageError, StorageKey
from tests.factories import DOMAIN, FORWARD


class FailingAliasStore(MemoryStateStore):
    """Store whose alias slot cannot be written."""

    def set(self, key: str, value: str) -> None:
        if key == StorageKey.ALIASES.value:
            raise StorageError("disk full")
        super().set(key, value)


@pytest.fixture
def service(store, clock, provider_client):
    service = AliasLifecycleService(store, "device_1", client=provider_client, clock=clock)
    yield service
    service.deletion_scheduler.disarm_all()


class TestHelpers:
    """Tests for module-level helpers."""

    def test_generate_alias_name(self):
        name = generate_alias_name()
        assert len(name) == 10
        assert ALIAS_NAME_PATTERN.match(name)

    def test_generated_names_differ(self):
        assert len({generate_alias_name() for _ in range(20)}) == 20

    def test_validate_forward_target_strips(self):
        assert validate_forward_target("  me@gmail.com ") == "me@gmail.com"

    @pytest.mark.parametrize("target", ["", "nope", "a@b", "a b@c.test", "@c.test"])
    def test_invalid_forward_targets(self, target):
        with pytest.raises(InvalidForwardTargetError):
            validate_forward_target(target)

    def test_same_domain_rejected(self):
        with pytest.raises(InvalidForwardTargetError, match="own domain"):
            validate_forward_target("me@EXAMPLE.com", DOMAIN)

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(240, "4m 0s"), (192, "3m 12s"), (5, "0m 5s"), (0, "Expired"), (-3, "Expired")],
    )
    def test_format_remaining(self, seconds, expected):
        assert format_remaining(timedelta(seconds=seconds)) == expected


class TestAliasRecord:
    """Tests for the record model."""

    def test_window_must_be_positive(self):
        now = datetime(2026, 1, 15, tzinfo=UTC)
        with pytest.raises(ValidationError, match="expires_at"):
            AliasRecord(
                name="a",
                domain=DOMAIN,
                forward_target=FORWARD,
                created_at=now,
                expires_at=now,
                owner_device_id="device_1",
                remote_id="1",
            )

    def test_time_remaining_never_negative(self):
        now = datetime(2026, 1, 15, tzinfo=UTC)
        record = AliasRecord(
            name="a",
            domain=DOMAIN,
            forward_target=FORWARD,
            created_at=now,
            expires_at=now + timedelta(minutes=4),
            owner_device_id="device_1",
            remote_id="1",
        )

        assert record.address == "a@example.com"
        assert record.time_remaining(now + timedelta(minutes=1)) == timedelta(minutes=3)
        assert record.time_remaining(now + timedelta(minutes=10)) == timedelta(0)

    def test_ttl_must_be_positive(self, store):
        with pytest.raises(ValueError, match="TTL"):
            AliasLifecycleService(store, "device_1", ttl=timedelta(0))


class TestCreateAlias:
    """Tests for create_alias()."""

    @pytest.mark.asyncio
    async def test_creates_active_record_with_fixed_ttl(self, service, provider_client):
        record = await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert record.status is AliasStatus.ACTIVE
        assert (record.expires_at - record.created_at) / timedelta(milliseconds=1) == 240000
        assert record.owner_device_id == "device_1"
        assert record.remote_id == "9001"
        provider_client.create_alias.assert_awaited_once_with(DOMAIN, "a1b2c3", FORWARD)

    @pytest.mark.asyncio
    async def test_arms_deletion_and_persists(self, service, store):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.deletion_scheduler.is_armed(DOMAIN, "a1b2c3")
        assert "a1b2c3" in store.get(StorageKey.ALIASES.value)

    @pytest.mark.asyncio
    async def test_name_lowercased(self, service):
        record = await service.create_alias("  MyAlias ", FORWARD, DOMAIN)
        assert record.name == "myalias"

    @pytest.mark.asyncio
    async def test_remote_id_fallback(self, service, provider_client, clock):
        provider_client.create_alias.return_value = CreatedAlias(True, None)

        record = await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert record.remote_id == str(int(clock().timestamp() * 1000))

    @pytest.mark.asyncio
    async def test_self_forward_rejected_without_remote_call(self, service, provider_client):
        with pytest.raises(InvalidForwardTargetError):
            await service.create_alias("a1b2c3", "me@example.com", DOMAIN)

        provider_client.create_alias.assert_not_awaited()
        assert service.list_aliases(DOMAIN) == []

    @pytest.mark.asyncio
    async def test_invalid_name_rejected(self, service, provider_client):
        with pytest.raises(InvalidAliasNameError):
            await service.create_alias("bad name!", FORWARD, DOMAIN)
        provider_client.create_alias.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, service):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        with pytest.raises(AliasExistsError):
            await service.create_alias("a1b2c3", FORWARD, DOMAIN)

    @pytest.mark.asyncio
    async def test_remote_failure_creates_nothing(self, service, provider_client, store):
        provider_client.create_alias.side_effect = ProviderError("Alias taken", 400)

        with pytest.raises(ProviderError):
            await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.get_alias(DOMAIN, "a1b2c3") is None
        assert not service.deletion_scheduler.armed_keys
        assert store.get(StorageKey.ALIASES.value) is None

    @pytest.mark.asyncio
    async def test_save_failure_rolls_back(self, clock, provider_client):
        service = AliasLifecycleService(
            FailingAliasStore(), "device_1", client=provider_client, clock=clock
        )

        with pytest.raises(StorageError):
            await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.get_alias(DOMAIN, "a1b2c3") is None
        assert not service.deletion_scheduler.armed_keys
        provider_client.create_alias.assert_awaited_once_with(DOMAIN, "a1b2c3", FORWARD)
        provider_client.delete_alias.assert_awaited_once_with(DOMAIN, "a1b2c3")

    @pytest.mark.asyncio
    async def test_save_failure_survives_remote_cleanup_error(self, clock, provider_client):
        provider_client.delete_alias.side_effect = ProviderError("Server error", 500)
        service = AliasLifecycleService(
            FailingAliasStore(), "device_1", client=provider_client, clock=clock
        )

        with pytest.raises(StorageError):
            await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.list_aliases(DOMAIN) == []

    @pytest.mark.asyncio
    async def test_requires_client(self, store, clock):
        service = AliasLifecycleService(store, "device_1", clock=clock)
        with pytest.raises(RuntimeError, match="log in"):
            await service.create_alias("a1b2c3", FORWARD, DOMAIN)

    @pytest.mark.asyncio
    async def test_marks_views_stale(self, store, clock, provider_client):
        events = ViewEvents()
        seen: list[frozenset[StaleView]] = []
        events.subscribe(seen.append)
        service = AliasLifecycleService(
            store, "device_1", client=provider_client, events=events, clock=clock
        )

        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        service.deletion_scheduler.disarm_all()

        assert seen == [frozenset({StaleView.ALIASES, StaleView.DASHBOARD})]


class TestStatusRecompute:
    """Tests for recompute_statuses() and expire_alias()."""

    @pytest.mark.asyncio
    async def test_active_until_expiry(self, service, clock):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        clock.advance(239)
        assert service.recompute_statuses(DOMAIN) == 0
        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.ACTIVE

        clock.advance(1)
        assert service.recompute_statuses(DOMAIN) == 1
        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_idempotent_and_never_resurrects(self, service, clock):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        clock.advance(300)
        service.recompute_statuses(DOMAIN)

        assert service.recompute_statuses(DOMAIN) == 0
        clock.advance(-600)
        service.recompute_statuses(DOMAIN)
        assert service.get_alias(DOMAIN, "a1b2c3").status is AliasStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expire_alias_once(self, service):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.expire_alias(DOMAIN, "a1b2c3")
        assert not service.expire_alias(DOMAIN, "a1b2c3")

    def test_expire_unknown_alias_is_noop(self, service):
        assert not service.expire_alias(DOMAIN, "missing")

    @pytest.mark.asyncio
    async def test_reads_recompute_first(self, service, clock):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)
        clock.advance(241)

        counts = service.dashboard(DOMAIN)

        assert (counts.total, counts.active, counts.expired) == (1, 0, 1)


class TestPurgeExpired:
    """Tests for purge_expired()."""

    @pytest.mark.asyncio
    async def test_purge_scenario(self, store, clock, provider_client):
        service = AliasLifecycleService(store, "device_1", client=provider_client, clock=clock)
        await service.create_alias("old", FORWARD, "x.com")
        clock.advance(200)
        await service.create_alias("fresh", FORWARD, "x.com")
        clock.advance(60)

        result = await service.purge_expired("x.com")
        service.deletion_scheduler.disarm_all()

        assert result.deleted_count == 1
        assert result.failed_count == 0
        assert [r.name for r in service.list_aliases("x.com")] == ["fresh"]
        provider_client.delete_alias.assert_awaited_once_with("x.com", "old")

    @pytest.mark.asyncio
    async def test_partial_failure_still_removes_all_expired(
        self, service, provider_client, clock
    ):
        await service.create_alias("one", FORWARD, DOMAIN)
        await service.create_alias("two", FORWARD, DOMAIN)
        clock.advance(241)
        provider_client.delete_alias.side_effect = [ProviderError("Server error", 500), None]

        result = await service.purge_expired(DOMAIN)

        assert result.deleted_count == 1
        assert result.failed_count == 1
        assert result.removed_count == 2
        assert service.list_aliases(DOMAIN) == []
        assert provider_client.delete_alias.await_count == 2

    @pytest.mark.asyncio
    async def test_already_deleted_counts_as_deleted(self, service, provider_client, clock):
        await service.create_alias("one", FORWARD, DOMAIN)
        clock.advance(241)
        provider_client.delete_alias.side_effect = ProviderNotFoundError("Not found", 404)

        result = await service.purge_expired(DOMAIN)

        assert result.deleted_count == 1
        assert result.failed_count == 0

    @pytest.mark.asyncio
    async def test_logout_during_purge_finishes_batch(self, service, provider_client, clock):
        await service.create_alias("aaaa", FORWARD, DOMAIN)
        await service.create_alias("bbbb", FORWARD, DOMAIN)
        clock.advance(241)

        async def unbind_then_delete(domain, name):
            service.bind_client(None)

        provider_client.delete_alias.side_effect = unbind_then_delete

        result = await service.purge_expired(DOMAIN)

        assert result.deleted_count == 2
        assert service.list_aliases(DOMAIN) == []
        assert provider_client.delete_alias.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_counted_as_failure(self, service, provider_client, clock):
        await service.create_alias("one", FORWARD, DOMAIN)
        await service.create_alias("two", FORWARD, DOMAIN)
        clock.advance(241)
        provider_client.delete_alias.side_effect = [RuntimeError("boom"), None]

        result = await service.purge_expired(DOMAIN)

        assert result.deleted_count == 1
        assert result.failed_count == 1
        assert service.list_aliases(DOMAIN) == []

    @pytest.mark.asyncio
    async def test_nothing_to_purge(self, service, provider_client):
        await service.create_alias("one", FORWARD, DOMAIN)

        result = await service.purge_expired(DOMAIN)

        assert result.removed_count == 0
        provider_client.delete_alias.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_purge_disarms_timers(self, service, clock):
        await service.create_alias("one", FORWARD, DOMAIN)
        service.deletion_scheduler.disarm_all()
        service.deletion_scheduler.arm(DOMAIN, "one", clock() + timedelta(hours=1))
        clock.advance(241)

        await service.purge_expired(DOMAIN)

        assert not service.deletion_scheduler.is_armed(DOMAIN, "one")


class TestListing:
    """Tests for list_aliases(), recent_aliases() and remove_alias()."""

    @pytest.mark.asyncio
    async def test_filters_and_search(self, service, clock):
        await service.create_alias("shop", FORWARD, DOMAIN)
        clock.advance(241)
        await service.create_alias("news", "other@mail.test", DOMAIN)

        assert [r.name for r in service.list_aliases(DOMAIN)] == ["news", "shop"]
        assert [r.name for r in service.list_aliases(DOMAIN, AliasFilter.ACTIVE)] == ["news"]
        assert [r.name for r in service.list_aliases(DOMAIN, AliasFilter.EXPIRED)] == ["shop"]
        assert [r.name for r in service.list_aliases(DOMAIN, search_term="MAIL.TEST")] == [
            "news"
        ]

    @pytest.mark.asyncio
    async def test_recent_aliases_limit(self, service, clock):
        for index in range(7):
            await service.create_alias(f"alias{index}", FORWARD, DOMAIN)
            clock.advance(1)

        recent = service.recent_aliases(DOMAIN)

        assert [r.name for r in recent] == ["alias6", "alias5", "alias4", "alias3", "alias2"]

    @pytest.mark.asyncio
    async def test_remove_alias(self, service):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        assert service.remove_alias(DOMAIN, "a1b2c3")
        assert not service.deletion_scheduler.is_armed(DOMAIN, "a1b2c3")
        assert not service.remove_alias(DOMAIN, "a1b2c3")

    @pytest.mark.asyncio
    async def test_owned_names_scoped_to_device(self, store, clock, provider_client):
        mine = AliasLifecycleService(store, "device_1", client=provider_client, clock=clock)
        await mine.create_alias("mine", FORWARD, DOMAIN)
        mine.deletion_scheduler.disarm_all()

        other = AliasLifecycleService(store, "device_2", client=provider_client, clock=clock)
        await other.create_alias("theirs", FORWARD, DOMAIN)
        other.deletion_scheduler.disarm_all()

        assert other.owned_names(DOMAIN) == {"theirs"}
        assert {r.name for r in other.list_aliases(DOMAIN)} == {"mine", "theirs"}


class TestPersistence:
    """Tests for loading the collection."""

    @pytest.mark.asyncio
    async def test_reload_from_store(self, service, store, clock):
        await service.create_alias("a1b2c3", FORWARD, DOMAIN)

        reloaded = AliasLifecycleService(store, "device_1", clock=clock)

        record = reloaded.get_alias(DOMAIN, "a1b2c3")
        assert record is not None
        assert record.forward_target == FORWARD
        assert reloaded.domains() == [DOMAIN]

    def test_corrupt_collection_reset(self, clock):
        store = MemoryStateStore({StorageKey.ALIASES.value: '{"example.com": [{"name": 1}]}'})

        service = AliasLifecycleService(store, "device_1", clock=clock)

        assert service.domains() == []
        assert StorageKey.ALIASES.value not in store

    @pytest.mark.asyncio
    async def test_rearm_only_own_active(self, store, clock, provider_client):
        mine = AliasLifecycleService(store, "device_1", client=provider_client, clock=clock)
        await mine.create_alias("active", FORWARD, DOMAIN)
        await mine.create_alias("expired", FORWARD, DOMAIN)
        mine.expire_alias(DOMAIN, "expired")
        mine.deletion_scheduler.disarm_all()

        other = AliasLifecycleService(store, "device_2", client=provider_client, clock=clock)
        await other.create_alias("theirs", FORWARD, DOMAIN)
        other.deletion_scheduler.disarm_all()

        restored = AliasLifecycleService(store, "device_1", client=provider_client, clock=clock)
        assert restored.rearm_active(DOMAIN) == 1
        assert restored.deletion_scheduler.armed_keys == {(DOMAIN, "active")}
        restored.deletion_scheduler.disarm_all()
