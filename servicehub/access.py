from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from servicehub.models import ROLE_ADMIN, Category, HealthSummary, Service, ServiceWithDetails, User
from servicehub.store.base import RecordStore


@dataclass(frozen=True)
class Caller:
    """The authenticated principal a query runs for."""

    user_id: str
    role: str
    email: str | None = None
    category_ids: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def category_scope(self) -> frozenset[str] | None:
        """None for admins (unrestricted), otherwise the permitted category set."""
        if self.is_admin:
            return None
        return self.category_ids

    @classmethod
    def from_user(cls, user: User) -> Caller:
        return cls(user_id=user.id, role=user.role, email=user.email, category_ids=frozenset(user.category_ids))

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "role": self.role,
            "categoryIds": sorted(self.category_ids),
        }


class ServiceQueries:
    """Role-filtered reads. Viewers only ever see services in their permitted categories."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def effective_services(self, caller: Caller) -> list[Service]:
        return self.store.list_services(caller.category_scope)

    def list_views(self, caller: Caller) -> list[ServiceWithDetails]:
        return self.store.list_services_with_details(caller.category_scope)

    def get_view(self, caller: Caller, service_id: str) -> ServiceWithDetails | None:
        # Out-of-scope services look exactly like missing ones.
        return self.store.get_service_with_details(service_id, category_ids=caller.category_scope)

    def summary(self, caller: Caller) -> HealthSummary:
        return self.store.health_summary(caller.category_scope)

    def permitted_categories(self, caller: Caller) -> list[Category]:
        categories = self.store.list_categories()
        scope = caller.category_scope
        if scope is None:
            return categories
        return [c for c in categories if c.id in scope]
