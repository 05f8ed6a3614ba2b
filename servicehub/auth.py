from __future__ import annotations

import hashlib
import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from servicehub.access import Caller
from servicehub.models import ROLE_ADMIN
from servicehub.settings import DashboardSettings
from servicehub.store.base import RecordStore


ADMIN_USER_ID = "admin"


def hash_token(token: str) -> str:
    s = (token or "").strip()
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_settings(req: Request) -> DashboardSettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, DashboardSettings):
        raise RuntimeError("Dashboard settings not configured")
    return settings


def get_store(req: Request) -> RecordStore:
    store: Any = getattr(req.app.state, "store", None)
    if not isinstance(store, RecordStore):
        raise RuntimeError("Record store not configured")
    return store


def require_caller(
    req: Request,
    settings: DashboardSettings = Depends(get_settings),
    store: RecordStore = Depends(get_store),
) -> Caller:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if settings.admin_token and hmac.compare_digest(token.strip(), settings.admin_token.strip()):
        return Caller(user_id=ADMIN_USER_ID, role=ROLE_ADMIN)
    user = store.get_user_by_token_hash(hash_token(token))
    if user is None:
        raise HTTPException(status_code=403, detail="invalid_token")
    return Caller.from_user(user)


def require_admin(caller: Caller = Depends(require_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="admin_required")
    return caller
