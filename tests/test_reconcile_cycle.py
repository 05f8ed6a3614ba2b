from __future__ import annotations

import httpx
import pytest

from servicehub.models import STATUS_DOWN, STATUS_UP
from servicehub.probe import ProbeClient
from servicehub.reconcile import ReconciliationCycle
from servicehub.store import InMemoryStore


@pytest.mark.asyncio
async def test_cycle_writes_health_info_streams(actuator_base_url: str, unreachable_base_url: str) -> None:
    store = InMemoryStore()
    up = store.create_service(name="orders", url=f"{actuator_base_url}/up")
    down = store.create_service(name="billing", url=f"{actuator_base_url}/down")
    gone = store.create_service(name="ghost", url=unreachable_base_url)

    async with httpx.AsyncClient() as client:
        cycle = ReconciliationCycle(store, ProbeClient(client, timeout_seconds=1.0), concurrency=2)
        report = await cycle.run_once()

    assert report.aborted is False
    assert report.services_total == 3
    assert report.up == 1
    assert report.down == 2
    assert report.info_updates == 2  # /up and /down both serve info
    assert report.streams_updates == 1
    assert report.write_failures == 0

    assert store.get_health(up.id).status == STATUS_UP
    assert store.get_health(up.id).components["diskSpace"]["status"] == "UP"
    assert store.get_streams(up.id).topics == "orders, payments"

    assert store.get_health(down.id).status == STATUS_DOWN
    assert store.get_health(down.id).components["db"]["status"] == "DOWN"
    assert store.get_streams(down.id) is None

    assert store.get_health(gone.id).status == STATUS_DOWN
    assert store.get_health(gone.id).components is None
    assert store.get_info(gone.id) is None


@pytest.mark.asyncio
async def test_soft_fail_leaves_previous_info_untouched(actuator_base_url: str) -> None:
    store = InMemoryStore()
    svc = store.create_service(name="bare", url=f"{actuator_base_url}/bare")
    store.upsert_info(svc.id, version="0.1", branch="old", build_time="yesterday", observed_at_ts=1.0)

    async with httpx.AsyncClient() as client:
        await ReconciliationCycle(store, ProbeClient(client)).run_once()

    info = store.get_info(svc.id)
    assert info is not None
    assert (info.version, info.branch, info.last_updated_ts) == ("0.1", "old", 1.0)
    assert store.get_health(svc.id).status == STATUS_UP


@pytest.mark.asyncio
async def test_replayed_cycle_converges(actuator_base_url: str) -> None:
    store = InMemoryStore()
    svc = store.create_service(name="orders", url=f"{actuator_base_url}/up")

    async with httpx.AsyncClient() as client:
        cycle = ReconciliationCycle(store, ProbeClient(client))
        await cycle.run_once()
        first = store.get_service_with_details(svc.id)
        await cycle.run_once()
        second = store.get_service_with_details(svc.id)

    assert first.health.id == second.health.id
    assert first.info.id == second.info.id
    assert first.health.status == second.health.status
    assert first.health.components == second.health.components
    assert (second.info.version, second.streams.state) == ("1.4.2", "RUNNING")


@pytest.mark.asyncio
async def test_probe_crash_recorded_as_down(actuator_base_url: str) -> None:
    class _Crashing(ProbeClient):
        async def probe_service(self, base_url: str):  # type: ignore[override]
            if base_url.endswith("/crash"):
                raise RuntimeError("probe exploded")
            return await super().probe_service(base_url)

    store = InMemoryStore()
    crash = store.create_service(name="crash", url=f"{actuator_base_url}/crash")
    ok = store.create_service(name="ok", url=f"{actuator_base_url}/up")

    async with httpx.AsyncClient() as client:
        report = await ReconciliationCycle(store, _Crashing(client)).run_once()

    assert report.aborted is False
    assert store.get_health(crash.id).status == STATUS_DOWN
    assert store.get_health(crash.id).components is None
    assert store.get_health(ok.id).status == STATUS_UP


@pytest.mark.asyncio
async def test_listing_failure_aborts_cycle() -> None:
    class _BrokenStore(InMemoryStore):
        def list_services(self, category_ids=None):  # type: ignore[override]
            raise RuntimeError("database is locked")

    async with httpx.AsyncClient() as client:
        report = await ReconciliationCycle(_BrokenStore(), ProbeClient(client)).run_once()

    assert report.aborted is True
    assert "database is locked" in str(report.error)
    assert report.services_total == 0
    assert report.as_dict()["aborted"] is True


@pytest.mark.asyncio
async def test_write_failure_is_isolated(actuator_base_url: str) -> None:
    class _FlakyStore(InMemoryStore):
        def upsert_info(self, service_id, **kwargs):  # type: ignore[override]
            raise RuntimeError("disk full")

    store = _FlakyStore()
    a = store.create_service(name="a", url=f"{actuator_base_url}/up")
    b = store.create_service(name="b", url=f"{actuator_base_url}/up")

    async with httpx.AsyncClient() as client:
        report = await ReconciliationCycle(store, ProbeClient(client)).run_once()

    assert report.write_failures == 2
    assert set(report.failed_service_ids) == {a.id, b.id}
    # Health and streams writes still happened.
    for sid in (a.id, b.id):
        assert store.get_health(sid).status == STATUS_UP
        assert store.get_streams(sid) is not None
        assert store.get_info(sid) is None


@pytest.mark.asyncio
async def test_empty_registry() -> None:
    async with httpx.AsyncClient() as client:
        report = await ReconciliationCycle(InMemoryStore(), ProbeClient(client)).run_once()
    assert report.services_total == 0
    assert report.aborted is False
