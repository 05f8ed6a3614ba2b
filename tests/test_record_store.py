from __future__ import annotations

from pathlib import Path

import pytest

from servicehub.models import STATUS_DOWN, STATUS_UNKNOWN, STATUS_UP
from servicehub.settings import DashboardSettings
from servicehub.store import (
    ConflictError,
    InMemoryStore,
    MissingReferenceError,
    RecordStore,
    SqliteStore,
    create_store,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> RecordStore:
    if request.param == "memory":
        return InMemoryStore()
    return SqliteStore(str(tmp_path / "servicehub.db"))


def test_create_store_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_store(DashboardSettings(store_backend="memory")), InMemoryStore)
    sqlite_store = create_store(DashboardSettings(store_backend="sqlite", db_path=str(tmp_path / "x" / "s.db")))
    assert isinstance(sqlite_store, SqliteStore)
    assert (tmp_path / "x" / "s.db").exists()


def test_unknown_backend_rejected() -> None:
    with pytest.raises(ValueError):
        DashboardSettings(store_backend="postgres")


def test_service_crud(store: RecordStore) -> None:
    cat = store.create_category(name="Commerce", description="Payments")
    svc = store.create_service(name=" orders ", url="http://orders:8080/", group="Commerce", category_id=cat.id)
    assert svc.name == "orders"
    assert store.get_service(svc.id) == svc
    assert [s.id for s in store.list_services()] == [svc.id]

    updated = store.update_service(svc.id, {"name": "orders-v2", "unknown_field": "ignored"})
    assert updated is not None
    assert updated.name == "orders-v2"
    assert updated.url == "http://orders:8080/"
    assert updated.category_id == cat.id

    cleared = store.update_service(svc.id, {"category_id": None})
    assert cleared is not None and cleared.category_id is None

    assert store.update_service("nope", {"name": "x"}) is None
    assert store.delete_service(svc.id) is True
    assert store.delete_service(svc.id) is False
    assert store.get_service(svc.id) is None


def test_service_with_unknown_category_rejected(store: RecordStore) -> None:
    with pytest.raises(MissingReferenceError):
        store.create_service(name="a", url="http://a", category_id="missing")
    svc = store.create_service(name="a", url="http://a")
    with pytest.raises(MissingReferenceError):
        store.update_service(svc.id, {"category_id": "missing"})


def test_upsert_is_idempotent_and_keeps_single_record(store: RecordStore) -> None:
    svc = store.create_service(name="a", url="http://a")
    first = store.upsert_health(svc.id, status=STATUS_UP, components={"db": {"status": "UP"}}, observed_at_ts=100.0)
    second = store.upsert_health(svc.id, status=STATUS_UP, components={"db": {"status": "UP"}}, observed_at_ts=100.0)
    assert first == second
    assert second is not None and second.id == first.id

    third = store.upsert_health(svc.id, status=STATUS_DOWN, components=None, observed_at_ts=130.0)
    assert third is not None
    assert third.id == first.id
    assert third.status == STATUS_DOWN
    assert third.components is None
    assert store.get_health(svc.id) == third


def test_older_observation_does_not_overwrite(store: RecordStore) -> None:
    svc = store.create_service(name="a", url="http://a")
    store.upsert_health(svc.id, status=STATUS_UP, observed_at_ts=200.0)
    kept = store.upsert_health(svc.id, status=STATUS_DOWN, observed_at_ts=150.0)
    assert kept is not None and kept.status == STATUS_UP
    assert store.get_health(svc.id).last_checked_ts == 200.0

    store.upsert_info(svc.id, version="2", branch="main", build_time=None, observed_at_ts=200.0)
    store.upsert_info(svc.id, version="1", branch="old", build_time=None, observed_at_ts=100.0)
    assert store.get_info(svc.id).version == "2"


def test_upsert_for_missing_service_is_noop(store: RecordStore) -> None:
    assert store.upsert_health("ghost", status=STATUS_UP) is None
    assert store.upsert_info("ghost", version="1", branch=None, build_time=None) is None
    assert store.upsert_streams("ghost", state="RUNNING", threads=None, topics=None, partitions=None) is None
    assert store.get_health("ghost") is None


def test_delete_service_cascades(store: RecordStore) -> None:
    svc = store.create_service(name="a", url="http://a")
    other = store.create_service(name="b", url="http://b")
    for sid in (svc.id, other.id):
        store.upsert_health(sid, status=STATUS_UP)
        store.upsert_info(sid, version="1", branch="main", build_time="t")
        store.upsert_streams(sid, state="RUNNING", threads="1", topics="t", partitions="1")

    assert store.delete_service(svc.id) is True
    assert store.get_health(svc.id) is None
    assert store.get_info(svc.id) is None
    assert store.get_streams(svc.id) is None
    # Sibling untouched.
    assert store.get_health(other.id) is not None
    assert store.get_streams(other.id) is not None


def test_combined_view_and_summary(store: RecordStore) -> None:
    cat = store.create_category(name="Data")
    up = store.create_service(name="up", url="http://up", category_id=cat.id)
    down = store.create_service(name="down", url="http://down")
    unknown = store.create_service(name="unknown", url="http://unknown")
    store.upsert_health(up.id, status=STATUS_UP, components={"db": {"status": "UP"}})
    store.upsert_info(up.id, version="1.0", branch="main", build_time="2024-01-01")
    store.upsert_health(down.id, status=STATUS_DOWN)

    view = store.get_service_with_details(up.id)
    assert view is not None
    assert view.status == STATUS_UP
    assert view.category == cat
    assert view.info is not None and view.info.version == "1.0"
    assert view.streams is None

    wire = view.as_dict()
    assert wire["healthData"]["status"] == STATUS_UP
    assert wire["healthData"]["healthComponents"] == {"db": {"status": "UP"}}
    assert wire["serviceInfo"]["buildTime"] == "2024-01-01"
    assert wire["kafkaStreamsInfo"] is None
    assert wire["category"]["name"] == "Data"

    unknown_view = store.get_service_with_details(unknown.id)
    assert unknown_view is not None and unknown_view.status == STATUS_UNKNOWN
    assert store.get_service_with_details("missing") is None

    summary = store.health_summary()
    assert (summary.total, summary.healthy, summary.unhealthy, summary.unknown) == (3, 1, 1, 1)
    assert summary.as_dict()["unknownServices"] == 1


def test_category_filtering(store: RecordStore) -> None:
    a = store.create_category(name="A")
    b = store.create_category(name="B")
    c = store.create_category(name="C")
    sa = store.create_service(name="sa", url="http://sa", category_id=a.id)
    sb = store.create_service(name="sb", url="http://sb", category_id=b.id)
    store.create_service(name="sc", url="http://sc", category_id=c.id)
    store.create_service(name="none", url="http://none")

    assert len(store.list_services()) == 4
    assert {s.id for s in store.list_services([a.id, b.id])} == {sa.id, sb.id}
    assert store.list_services([]) == []
    assert store.list_services_with_details([]) == []
    assert {d.service.id for d in store.list_services_with_details([b.id])} == {sb.id}

    assert store.get_service_with_details(sa.id, category_ids=[b.id]) is None
    assert store.get_service_with_details(sa.id, category_ids=[a.id, b.id]) is not None
    assert store.health_summary([b.id]).total == 1


def test_category_conflict_and_delete_detaches(store: RecordStore) -> None:
    cat = store.create_category(name="Warehouse")
    with pytest.raises(ConflictError):
        store.create_category(name="Warehouse")

    svc = store.create_service(name="stock", url="http://stock", category_id=cat.id)
    user = store.create_user(email="v@example.com", role="viewer", token_hash="h1", category_ids=[cat.id])
    assert store.get_user(user.id).category_ids == (cat.id,)

    assert store.delete_category(cat.id) is True
    assert store.delete_category(cat.id) is False
    assert store.get_service(svc.id).category_id is None
    assert store.get_user(user.id).category_ids == ()
    assert [c.name for c in store.list_categories()] == []


def test_users(store: RecordStore) -> None:
    a = store.create_category(name="A")
    b = store.create_category(name="B")
    user = store.create_user(
        email="Viewer@Example.com",
        role="viewer",
        token_hash="hash-1",
        display_name="Viewer",
        category_ids=[a.id, a.id],
    )
    assert user.email == "viewer@example.com"
    assert user.category_ids == (a.id,)
    assert store.get_user_by_token_hash("hash-1") == user
    assert store.get_user_by_token_hash("") is None
    assert store.get_user_by_token_hash("other") is None

    with pytest.raises(ConflictError):
        store.create_user(email="viewer@example.com", role="viewer", token_hash="hash-2")
    with pytest.raises(MissingReferenceError):
        store.create_user(email="x@example.com", role="viewer", token_hash="hash-3", category_ids=["missing"])

    assert store.set_user_categories(user.id, [b.id, a.id]) is True
    assert set(store.get_user(user.id).category_ids) == {a.id, b.id}
    assert store.set_user_categories("missing", [a.id]) is False
    with pytest.raises(MissingReferenceError):
        store.set_user_categories(user.id, ["missing"])

    updated = store.update_user(user.id, {"role": "admin", "display_name": "Boss"})
    assert updated is not None and updated.is_admin and updated.display_name == "Boss"
    assert store.update_user("missing", {"role": "admin"}) is None

    assert [u.id for u in store.list_users()] == [user.id]
    assert store.delete_user(user.id) is True
    assert store.get_user_by_token_hash("hash-1") is None
    assert store.delete_user(user.id) is False


def test_sqlite_persists_across_instances(tmp_path: Path) -> None:
    path = str(tmp_path / "persist.db")
    first = SqliteStore(path)
    svc = first.create_service(name="a", url="http://a")
    first.upsert_health(svc.id, status=STATUS_UP, components={"ping": {"status": "UP"}})

    second = SqliteStore(path)
    health = second.get_health(svc.id)
    assert health is not None
    assert health.components == {"ping": {"status": "UP"}}
