from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable

from servicehub.models import (
    Category,
    HealthRecord,
    HealthSummary,
    InfoRecord,
    Service,
    ServiceWithDetails,
    StreamsRecord,
    User,
)


SERVICE_PATCH_FIELDS = ("name", "url", "group", "category_id")
USER_PATCH_FIELDS = ("email", "display_name", "role")


class StoreError(Exception):
    """Base class for record store failures."""


class ConflictError(StoreError):
    """A uniqueness constraint would be violated (duplicate category name, user email...)."""


class MissingReferenceError(StoreError):
    """A referenced category or user does not exist."""


def utc_ts() -> float:
    return float(time.time())


def new_id() -> str:
    return str(uuid.uuid4())


def category_filter(category_ids: Iterable[str] | None) -> frozenset[str] | None:
    """None means unrestricted; an empty set matches nothing."""
    if category_ids is None:
        return None
    return frozenset(str(c) for c in category_ids if c)


def clean_patch(patch: dict[str, Any] | None, allowed: Iterable[str]) -> dict[str, Any]:
    allowed_set = set(allowed)
    return {k: v for k, v in (patch or {}).items() if k in allowed_set}


class RecordStore(ABC):
    """
    Keyed storage for services, their latest health/info/streams records, categories and users.

    Implementations are synchronous and thread-safe; async callers go through asyncio.to_thread.
    Every upsert is atomic per record and keyed by service id (at most one record per kind and
    service). Upserts for unknown service ids are ignored and return None, and an upsert whose
    observation timestamp is older than the stored one leaves the stored record in place.
    """

    def close(self) -> None:
        return None

    # -----------------
    # Categories
    # -----------------
    @abstractmethod
    def create_category(self, *, name: str, description: str | None = None) -> Category: ...

    @abstractmethod
    def get_category(self, category_id: str) -> Category | None: ...

    @abstractmethod
    def list_categories(self) -> list[Category]: ...

    @abstractmethod
    def delete_category(self, category_id: str) -> bool: ...

    # -----------------
    # Services
    # -----------------
    @abstractmethod
    def create_service(self, *, name: str, url: str, group: str = "", category_id: str | None = None) -> Service: ...

    @abstractmethod
    def get_service(self, service_id: str) -> Service | None: ...

    @abstractmethod
    def list_services(self, category_ids: Iterable[str] | None = None) -> list[Service]: ...

    @abstractmethod
    def update_service(self, service_id: str, patch: dict[str, Any]) -> Service | None: ...

    @abstractmethod
    def delete_service(self, service_id: str) -> bool:
        """Delete the service and its health/info/streams records."""

    # -----------------
    # Latest-state records
    # -----------------
    @abstractmethod
    def upsert_health(
        self,
        service_id: str,
        *,
        status: str,
        components: Any = None,
        observed_at_ts: float | None = None,
    ) -> HealthRecord | None: ...

    @abstractmethod
    def upsert_info(
        self,
        service_id: str,
        *,
        version: str | None,
        branch: str | None,
        build_time: str | None,
        observed_at_ts: float | None = None,
    ) -> InfoRecord | None: ...

    @abstractmethod
    def upsert_streams(
        self,
        service_id: str,
        *,
        state: str | None,
        threads: str | None,
        topics: str | None,
        partitions: str | None,
        observed_at_ts: float | None = None,
    ) -> StreamsRecord | None: ...

    @abstractmethod
    def get_health(self, service_id: str) -> HealthRecord | None: ...

    @abstractmethod
    def get_info(self, service_id: str) -> InfoRecord | None: ...

    @abstractmethod
    def get_streams(self, service_id: str) -> StreamsRecord | None: ...

    # -----------------
    # Users (authorization provider data)
    # -----------------
    @abstractmethod
    def create_user(
        self,
        *,
        email: str,
        role: str,
        token_hash: str,
        display_name: str | None = None,
        category_ids: Iterable[str] = (),
    ) -> User: ...

    @abstractmethod
    def get_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    def get_user_by_token_hash(self, token_hash: str) -> User | None: ...

    @abstractmethod
    def list_users(self) -> list[User]: ...

    @abstractmethod
    def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None: ...

    @abstractmethod
    def delete_user(self, user_id: str) -> bool: ...

    @abstractmethod
    def set_user_categories(self, user_id: str, category_ids: Iterable[str]) -> bool:
        """Replace the permitted category set. Returns False for an unknown user."""

    # -----------------
    # Combined reads
    # -----------------
    def get_service_with_details(
        self, service_id: str, *, category_ids: Iterable[str] | None = None
    ) -> ServiceWithDetails | None:
        allowed = category_filter(category_ids)
        service = self.get_service(service_id)
        if service is None:
            return None
        if allowed is not None and service.category_id not in allowed:
            return None
        return self._details_for(service)

    def list_services_with_details(self, category_ids: Iterable[str] | None = None) -> list[ServiceWithDetails]:
        return [self._details_for(s) for s in self.list_services(category_ids)]

    def health_summary(self, category_ids: Iterable[str] | None = None) -> HealthSummary:
        statuses = [d.status for d in self.list_services_with_details(category_ids)]
        return HealthSummary.from_statuses(statuses, now_ts=utc_ts())

    def _details_for(self, service: Service) -> ServiceWithDetails:
        category = self.get_category(service.category_id) if service.category_id else None
        return ServiceWithDetails(
            service=service,
            health=self.get_health(service.id),
            info=self.get_info(service.id),
            streams=self.get_streams(service.id),
            category=category,
        )
