from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from servicehub.models import ROLES


def ensure_http_url(url: str) -> str:
    s = str(url or "").strip()
    if not s:
        raise ValueError("missing_url")
    parts = urlsplit(s)
    if (parts.scheme or "").lower() not in {"http", "https"}:
        raise ValueError("invalid_url_scheme")
    if not parts.netloc:
        raise ValueError("invalid_url_host")
    return s


def _ensure_role(role: str) -> str:
    s = str(role or "").strip().lower()
    if s not in ROLES:
        raise ValueError(f"invalid_role (expected one of {', '.join(ROLES)})")
    return s


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateServiceRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    url: str = Field(..., min_length=1, max_length=2000)
    group: str = Field("", max_length=200)
    category_id: str | None = Field(None, alias="categoryId", max_length=80)

    @field_validator("url")
    @classmethod
    def _url(cls, v: str) -> str:
        return ensure_http_url(v)


class UpdateServiceRequest(_CamelModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    url: str | None = Field(None, min_length=1, max_length=2000)
    group: str | None = Field(None, max_length=200)
    # Explicit null clears the category.
    category_id: str | None = Field(None, alias="categoryId", max_length=80)

    @field_validator("url")
    @classmethod
    def _url(cls, v: str | None) -> str | None:
        return None if v is None else ensure_http_url(v)

    def to_patch(self) -> dict[str, Any]:
        patch: dict[str, Any] = {k: getattr(self, k) for k in ("name", "url", "group") if getattr(self, k) is not None}
        if "category_id" in self.model_fields_set:
            patch["category_id"] = self.category_id
        return patch


class CreateCategoryRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: str | None = Field(None, max_length=500)


class CreateUserRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str = "viewer"
    display_name: str | None = Field(None, alias="displayName", max_length=200)
    category_ids: list[str] = Field(default_factory=list, alias="categoryIds")

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        return _ensure_role(v)


class UpdateUserRequest(_CamelModel):
    email: str | None = Field(None, min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str | None = None
    display_name: str | None = Field(None, alias="displayName", max_length=200)

    @field_validator("role")
    @classmethod
    def _role(cls, v: str | None) -> str | None:
        return None if v is None else _ensure_role(v)

    def to_patch(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in ("email", "role", "display_name") if getattr(self, k) is not None}


class SetPermissionsRequest(_CamelModel):
    category_ids: list[str] = Field(..., alias="categoryIds")
