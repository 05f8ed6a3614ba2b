from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Iterable

from servicehub.models import Category, HealthRecord, InfoRecord, Service, StreamsRecord, User
from servicehub.store.base import (
    SERVICE_PATCH_FIELDS,
    USER_PATCH_FIELDS,
    ConflictError,
    MissingReferenceError,
    RecordStore,
    category_filter,
    clean_patch,
    new_id,
    utc_ts,
)


class InMemoryStore(RecordStore):
    """Map-backed store for tests and ephemeral deployments. State is lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._categories: dict[str, Category] = {}
        self._services: dict[str, Service] = {}
        self._health: dict[str, HealthRecord] = {}
        self._info: dict[str, InfoRecord] = {}
        self._streams: dict[str, StreamsRecord] = {}
        self._users: dict[str, User] = {}
        self._token_hashes: dict[str, str] = {}  # token_hash -> user_id

    # -----------------
    # Categories
    # -----------------
    def create_category(self, *, name: str, description: str | None = None) -> Category:
        clean_name = name.strip()
        with self._lock:
            if any(c.name == clean_name for c in self._categories.values()):
                raise ConflictError(f"category_exists: {clean_name}")
            category = Category(id=new_id(), name=clean_name, description=description, created_at_ts=utc_ts())
            self._categories[category.id] = category
            return category

    def get_category(self, category_id: str) -> Category | None:
        with self._lock:
            return self._categories.get(category_id)

    def list_categories(self) -> list[Category]:
        with self._lock:
            return sorted(self._categories.values(), key=lambda c: c.name)

    def delete_category(self, category_id: str) -> bool:
        with self._lock:
            if self._categories.pop(category_id, None) is None:
                return False
            now = utc_ts()
            for sid, svc in list(self._services.items()):
                if svc.category_id == category_id:
                    self._services[sid] = replace(svc, category_id=None, updated_at_ts=now)
            for uid, user in list(self._users.items()):
                if category_id in user.category_ids:
                    kept = tuple(c for c in user.category_ids if c != category_id)
                    self._users[uid] = replace(user, category_ids=kept)
            return True

    def _require_category(self, category_id: str | None) -> None:
        if category_id is not None and category_id not in self._categories:
            raise MissingReferenceError(f"unknown_category: {category_id}")

    # -----------------
    # Services
    # -----------------
    def create_service(self, *, name: str, url: str, group: str = "", category_id: str | None = None) -> Service:
        with self._lock:
            self._require_category(category_id)
            now = utc_ts()
            service = Service(
                id=new_id(),
                name=name.strip(),
                url=url.strip(),
                group=(group or "").strip(),
                category_id=category_id,
                created_at_ts=now,
                updated_at_ts=now,
            )
            self._services[service.id] = service
            return service

    def get_service(self, service_id: str) -> Service | None:
        with self._lock:
            return self._services.get(service_id)

    def list_services(self, category_ids: Iterable[str] | None = None) -> list[Service]:
        allowed = category_filter(category_ids)
        with self._lock:
            services = list(self._services.values())
        if allowed is not None:
            services = [s for s in services if s.category_id in allowed]
        return sorted(services, key=lambda s: s.created_at_ts)

    def update_service(self, service_id: str, patch: dict[str, Any]) -> Service | None:
        cleaned = clean_patch(patch, SERVICE_PATCH_FIELDS)
        with self._lock:
            current = self._services.get(service_id)
            if current is None:
                return None
            changes: dict[str, Any] = {}
            for key in ("name", "url", "group"):
                if cleaned.get(key) is not None:
                    changes[key] = str(cleaned[key]).strip()
            if "category_id" in cleaned:
                self._require_category(cleaned["category_id"])
                changes["category_id"] = cleaned["category_id"]
            if not changes:
                return current
            updated = replace(current, updated_at_ts=utc_ts(), **changes)
            self._services[service_id] = updated
            return updated

    def delete_service(self, service_id: str) -> bool:
        with self._lock:
            if self._services.pop(service_id, None) is None:
                return False
            self._health.pop(service_id, None)
            self._info.pop(service_id, None)
            self._streams.pop(service_id, None)
            return True

    # -----------------
    # Latest-state records
    # -----------------
    def upsert_health(
        self,
        service_id: str,
        *,
        status: str,
        components: Any = None,
        observed_at_ts: float | None = None,
    ) -> HealthRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._lock:
            if service_id not in self._services:
                return None
            existing = self._health.get(service_id)
            if existing is not None and existing.last_checked_ts > ts:
                return existing
            record = HealthRecord(
                id=existing.id if existing else new_id(),
                service_id=service_id,
                status=status,
                components=components,
                last_checked_ts=ts,
            )
            self._health[service_id] = record
            return record

    def upsert_info(
        self,
        service_id: str,
        *,
        version: str | None,
        branch: str | None,
        build_time: str | None,
        observed_at_ts: float | None = None,
    ) -> InfoRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._lock:
            if service_id not in self._services:
                return None
            existing = self._info.get(service_id)
            if existing is not None and existing.last_updated_ts > ts:
                return existing
            record = InfoRecord(
                id=existing.id if existing else new_id(),
                service_id=service_id,
                version=version,
                branch=branch,
                build_time=build_time,
                last_updated_ts=ts,
            )
            self._info[service_id] = record
            return record

    def upsert_streams(
        self,
        service_id: str,
        *,
        state: str | None,
        threads: str | None,
        topics: str | None,
        partitions: str | None,
        observed_at_ts: float | None = None,
    ) -> StreamsRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._lock:
            if service_id not in self._services:
                return None
            existing = self._streams.get(service_id)
            if existing is not None and existing.last_updated_ts > ts:
                return existing
            record = StreamsRecord(
                id=existing.id if existing else new_id(),
                service_id=service_id,
                state=state,
                threads=threads,
                topics=topics,
                partitions=partitions,
                last_updated_ts=ts,
            )
            self._streams[service_id] = record
            return record

    def get_health(self, service_id: str) -> HealthRecord | None:
        with self._lock:
            return self._health.get(service_id)

    def get_info(self, service_id: str) -> InfoRecord | None:
        with self._lock:
            return self._info.get(service_id)

    def get_streams(self, service_id: str) -> StreamsRecord | None:
        with self._lock:
            return self._streams.get(service_id)

    # -----------------
    # Users
    # -----------------
    def create_user(
        self,
        *,
        email: str,
        role: str,
        token_hash: str,
        display_name: str | None = None,
        category_ids: Iterable[str] = (),
    ) -> User:
        clean_email = email.strip().lower()
        cats = tuple(dict.fromkeys(category_ids))
        with self._lock:
            if any(u.email == clean_email for u in self._users.values()):
                raise ConflictError(f"user_exists: {clean_email}")
            for cid in cats:
                self._require_category(cid)
            user = User(
                id=new_id(),
                email=clean_email,
                display_name=display_name,
                role=role,
                category_ids=cats,
                created_at_ts=utc_ts(),
            )
            self._users[user.id] = user
            self._token_hashes[token_hash] = user.id
            return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_token_hash(self, token_hash: str) -> User | None:
        if not token_hash:
            return None
        with self._lock:
            uid = self._token_hashes.get(token_hash)
            return self._users.get(uid) if uid else None

    def list_users(self) -> list[User]:
        with self._lock:
            return sorted(self._users.values(), key=lambda u: u.created_at_ts)

    def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None:
        cleaned = {k: v for k, v in clean_patch(patch, USER_PATCH_FIELDS).items() if v is not None}
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return None
            if "email" in cleaned:
                cleaned["email"] = str(cleaned["email"]).strip().lower()
                if any(u.email == cleaned["email"] and u.id != user_id for u in self._users.values()):
                    raise ConflictError(f"user_exists: {cleaned['email']}")
            updated = replace(current, **cleaned)
            self._users[user_id] = updated
            return updated

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            if self._users.pop(user_id, None) is None:
                return False
            for th in [th for th, uid in self._token_hashes.items() if uid == user_id]:
                del self._token_hashes[th]
            return True

    def set_user_categories(self, user_id: str, category_ids: Iterable[str]) -> bool:
        cats = tuple(dict.fromkeys(category_ids))
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return False
            for cid in cats:
                self._require_category(cid)
            self._users[user_id] = replace(current, category_ids=cats)
            return True
