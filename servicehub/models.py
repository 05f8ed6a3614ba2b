from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


STATUS_UP = "UP"
STATUS_DOWN = "DOWN"
# Never written by the probe client: a service without a HealthRecord is UNKNOWN.
STATUS_UNKNOWN = "UNKNOWN"

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"
ROLES = (ROLE_ADMIN, ROLE_VIEWER)


def iso_ts(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    description: str | None
    created_at_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": iso_ts(self.created_at_ts),
        }


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    url: str
    group: str
    category_id: str | None
    created_at_ts: float
    updated_at_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "group": self.group,
            "categoryId": self.category_id,
            "createdAt": iso_ts(self.created_at_ts),
            "updatedAt": iso_ts(self.updated_at_ts),
        }


@dataclass(frozen=True)
class HealthRecord:
    id: str
    service_id: str
    status: str
    components: Any
    last_checked_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serviceId": self.service_id,
            "status": self.status,
            "healthComponents": self.components,
            "lastChecked": iso_ts(self.last_checked_ts),
        }


@dataclass(frozen=True)
class InfoRecord:
    id: str
    service_id: str
    version: str | None
    branch: str | None
    build_time: str | None
    last_updated_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serviceId": self.service_id,
            "version": self.version,
            "branch": self.branch,
            "buildTime": self.build_time,
            "lastUpdated": iso_ts(self.last_updated_ts),
        }


@dataclass(frozen=True)
class StreamsRecord:
    id: str
    service_id: str
    state: str | None
    threads: str | None
    topics: str | None
    partitions: str | None
    last_updated_ts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serviceId": self.service_id,
            "state": self.state,
            "threads": self.threads,
            "topics": self.topics,
            "partitions": self.partitions,
            "lastUpdated": iso_ts(self.last_updated_ts),
        }


@dataclass(frozen=True)
class User:
    id: str
    email: str
    display_name: str | None
    role: str
    category_ids: tuple[str, ...]
    created_at_ts: float

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "role": self.role,
            "categoryIds": list(self.category_ids),
            "createdAt": iso_ts(self.created_at_ts),
        }


@dataclass(frozen=True)
class ServiceWithDetails:
    """A service joined with its latest dependent records. Never persisted."""

    service: Service
    health: HealthRecord | None = None
    info: InfoRecord | None = None
    streams: StreamsRecord | None = None
    category: Category | None = None

    @property
    def status(self) -> str:
        if self.health is None:
            return STATUS_UNKNOWN
        return self.health.status

    def as_dict(self) -> dict[str, Any]:
        out = self.service.as_dict()
        out["status"] = self.status
        out["healthData"] = self.health.as_dict() if self.health else None
        out["serviceInfo"] = self.info.as_dict() if self.info else None
        out["kafkaStreamsInfo"] = self.streams.as_dict() if self.streams else None
        out["category"] = self.category.as_dict() if self.category else None
        return out


@dataclass(frozen=True)
class HealthSummary:
    total: int
    healthy: int
    unhealthy: int
    last_update_ts: float

    @property
    def unknown(self) -> int:
        return self.total - self.healthy - self.unhealthy

    @classmethod
    def from_statuses(cls, statuses: list[str], *, now_ts: float) -> HealthSummary:
        healthy = sum(1 for s in statuses if s == STATUS_UP)
        unhealthy = sum(1 for s in statuses if s == STATUS_DOWN)
        return cls(total=len(statuses), healthy=healthy, unhealthy=unhealthy, last_update_ts=now_ts)

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalServices": self.total,
            "healthyServices": self.healthy,
            "unhealthyServices": self.unhealthy,
            "unknownServices": self.unknown,
            "lastUpdate": iso_ts(self.last_update_ts),
        }

