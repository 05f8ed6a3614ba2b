from __future__ import annotations

import asyncio
import secrets
import time
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from servicehub import __version__
from servicehub.access import Caller, ServiceQueries
from servicehub.auth import hash_token, require_admin, require_caller
from servicehub.probe import ProbeClient
from servicehub.reconcile import ReconciliationCycle
from servicehub.scheduler import MonitorScheduler
from servicehub.schema import (
    CreateCategoryRequest,
    CreateServiceRequest,
    CreateUserRequest,
    SetPermissionsRequest,
    UpdateServiceRequest,
    UpdateUserRequest,
)
from servicehub.settings import DashboardSettings
from servicehub.store import ConflictError, MissingReferenceError, RecordStore, create_store


logger = structlog.get_logger(__name__)

DEFAULT_CATEGORIES = (
    ("Authentication", "User authentication and authorization services"),
    ("Commerce", "E-commerce and payment processing services"),
    ("Communication", "Messaging and notification services"),
    ("Data", "Data processing and analytics services"),
    ("Financial", "Financial and accounting services"),
    ("Warehouse", "Inventory and warehouse management services"),
)


def seed_default_categories(store: RecordStore) -> int:
    """Create the default categories when the store has none. Returns how many were created."""
    if store.list_categories():
        return 0
    created = 0
    for name, description in DEFAULT_CATEGORIES:
        try:
            store.create_category(name=name, description=description)
            created += 1
        except ConflictError:
            continue
    return created


def _validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for err in exc.errors():
        out.append(
            {
                "loc": [str(p) for p in err.get("loc", ())],
                "msg": str(err.get("msg") or ""),
                "type": str(err.get("type") or ""),
            }
        )
    return out


def create_app(settings: DashboardSettings | None = None, store: RecordStore | None = None) -> FastAPI:
    app = FastAPI(title="ServiceHub", version=__version__)
    app.state.settings = settings or DashboardSettings()
    app.state.store = store if store is not None else create_store(app.state.settings)
    app.state.queries = ServiceQueries(app.state.store)
    app.state.scheduler = None
    app.state.http_client = None

    @app.exception_handler(RequestValidationError)
    async def _invalid_input(_req: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"message": "Invalid input", "errors": _validation_errors(exc)})

    @app.middleware("http")
    async def _request_log(req: Request, call_next: Any) -> Response:
        settings2: DashboardSettings = app.state.settings
        if not settings2.request_log_enabled or not req.url.path.startswith("/api"):
            return await call_next(req)
        started = time.perf_counter()
        response = await call_next(req)
        logger.info(
            "API request",
            method=req.method,
            path=req.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        return response

    @app.on_event("startup")
    async def _startup() -> None:
        settings2: DashboardSettings = app.state.settings
        store2: RecordStore = app.state.store
        if settings2.seed_default_categories:
            seeded = await asyncio.to_thread(seed_default_categories, store2)
            if seeded:
                logger.info("Seeded default categories", count=seeded)

        app.state.http_client = httpx.AsyncClient(
            headers={"User-Agent": settings2.user_agent},
            timeout=settings2.probe_timeout_seconds,
        )
        probe_client = ProbeClient(app.state.http_client, timeout_seconds=settings2.probe_timeout_seconds)
        cycle = ReconciliationCycle(store2, probe_client, concurrency=settings2.probe_concurrency)
        app.state.scheduler = MonitorScheduler(cycle, interval_seconds=settings2.poll_interval_seconds)
        if settings2.monitor_enabled:
            await app.state.scheduler.start()
        else:
            logger.info("Monitoring loop disabled; manual refresh only")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        settings2: DashboardSettings = app.state.settings
        scheduler: MonitorScheduler | None = app.state.scheduler
        if scheduler is not None:
            await scheduler.stop()
            await scheduler.wait_idle(settings2.shutdown_grace_seconds)
        client: httpx.AsyncClient | None = app.state.http_client
        if client is not None:
            await client.aclose()
            app.state.http_client = None
        await asyncio.to_thread(app.state.store.close)

    def _queries() -> ServiceQueries:
        return app.state.queries

    def _store() -> RecordStore:
        return app.state.store

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.get("/api/auth/user")
    async def api_current_user(caller: Caller = Depends(require_caller)) -> dict[str, Any]:
        categories = await asyncio.to_thread(_queries().permitted_categories, caller)
        out = caller.as_dict()
        out["categories"] = [c.as_dict() for c in categories]
        return out

    # -----------------
    # Services
    # -----------------
    @app.get("/api/services")
    async def api_list_services(caller: Caller = Depends(require_caller)) -> list[dict[str, Any]]:
        views = await asyncio.to_thread(_queries().list_views, caller)
        return [v.as_dict() for v in views]

    @app.post("/api/services/refresh")
    async def api_refresh_services(_admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        scheduler: MonitorScheduler | None = app.state.scheduler
        if scheduler is None:
            raise HTTPException(status_code=503, detail="monitor_not_ready")
        services = await asyncio.to_thread(_store().list_services)
        count = len(services)
        scheduler.trigger("manual")
        return {"message": f"Refreshing {count} services", "count": count}

    @app.get("/api/services/{service_id}")
    async def api_get_service(service_id: str, caller: Caller = Depends(require_caller)) -> dict[str, Any]:
        view = await asyncio.to_thread(_queries().get_view, caller, service_id)
        if view is None:
            raise HTTPException(status_code=404, detail="service_not_found")
        return view.as_dict()

    @app.post("/api/services", status_code=201)
    async def api_create_service(req: CreateServiceRequest, _admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        try:
            service = await asyncio.to_thread(
                _store().create_service,
                name=req.name,
                url=req.url,
                group=req.group,
                category_id=req.category_id,
            )
        except MissingReferenceError as exc:
            raise HTTPException(status_code=400, detail="unknown_category") from exc
        logger.info("Service registered", service_id=service.id, name=service.name, url=service.url)
        return service.as_dict()

    @app.put("/api/services/{service_id}")
    async def api_update_service(
        service_id: str, req: UpdateServiceRequest, _admin: Caller = Depends(require_admin)
    ) -> dict[str, Any]:
        try:
            service = await asyncio.to_thread(_store().update_service, service_id, req.to_patch())
        except MissingReferenceError as exc:
            raise HTTPException(status_code=400, detail="unknown_category") from exc
        if service is None:
            raise HTTPException(status_code=404, detail="service_not_found")
        return service.as_dict()

    @app.delete("/api/services/{service_id}", status_code=204)
    async def api_delete_service(service_id: str, _admin: Caller = Depends(require_admin)) -> Response:
        deleted = await asyncio.to_thread(_store().delete_service, service_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="service_not_found")
        logger.info("Service deleted", service_id=service_id)
        return Response(status_code=204)

    @app.get("/api/health/summary")
    async def api_health_summary(caller: Caller = Depends(require_caller)) -> dict[str, Any]:
        summary = await asyncio.to_thread(_queries().summary, caller)
        return summary.as_dict()

    # -----------------
    # Categories
    # -----------------
    @app.get("/api/categories")
    async def api_list_categories(_caller: Caller = Depends(require_caller)) -> list[dict[str, Any]]:
        categories = await asyncio.to_thread(_store().list_categories)
        return [c.as_dict() for c in categories]

    @app.post("/api/categories", status_code=201)
    async def api_create_category(req: CreateCategoryRequest, _admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        try:
            category = await asyncio.to_thread(_store().create_category, name=req.name, description=req.description)
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail="category_exists") from exc
        return category.as_dict()

    @app.delete("/api/categories/{category_id}", status_code=204)
    async def api_delete_category(category_id: str, _admin: Caller = Depends(require_admin)) -> Response:
        deleted = await asyncio.to_thread(_store().delete_category, category_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="category_not_found")
        return Response(status_code=204)

    # -----------------
    # Users (admin)
    # -----------------
    @app.get("/api/users")
    async def api_list_users(_admin: Caller = Depends(require_admin)) -> list[dict[str, Any]]:
        users = await asyncio.to_thread(_store().list_users)
        return [u.as_dict() for u in users]

    @app.post("/api/users", status_code=201)
    async def api_create_user(req: CreateUserRequest, _admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        token = secrets.token_urlsafe(32)
        try:
            user = await asyncio.to_thread(
                _store().create_user,
                email=req.email,
                role=req.role,
                token_hash=hash_token(token),
                display_name=req.display_name,
                category_ids=req.category_ids,
            )
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail="user_exists") from exc
        except MissingReferenceError as exc:
            raise HTTPException(status_code=400, detail="unknown_category") from exc
        logger.info("User created", user_id=user.id, role=user.role)
        return {"user": user.as_dict(), "token": token}

    @app.put("/api/users/{user_id}")
    async def api_update_user(user_id: str, req: UpdateUserRequest, _admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        try:
            user = await asyncio.to_thread(_store().update_user, user_id, req.to_patch())
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail="user_exists") from exc
        if user is None:
            raise HTTPException(status_code=404, detail="user_not_found")
        return user.as_dict()

    @app.delete("/api/users/{user_id}", status_code=204)
    async def api_delete_user(user_id: str, _admin: Caller = Depends(require_admin)) -> Response:
        deleted = await asyncio.to_thread(_store().delete_user, user_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="user_not_found")
        return Response(status_code=204)

    @app.put("/api/users/{user_id}/permissions")
    async def api_set_permissions(
        user_id: str, req: SetPermissionsRequest, _admin: Caller = Depends(require_admin)
    ) -> dict[str, Any]:
        try:
            ok = await asyncio.to_thread(_store().set_user_categories, user_id, req.category_ids)
        except MissingReferenceError as exc:
            raise HTTPException(status_code=400, detail="unknown_category") from exc
        if not ok:
            raise HTTPException(status_code=404, detail="user_not_found")
        return {"message": "Permissions updated", "categoryIds": list(dict.fromkeys(req.category_ids))}

    @app.get("/api/monitor/status")
    async def api_monitor_status(_admin: Caller = Depends(require_admin)) -> dict[str, Any]:
        scheduler: MonitorScheduler | None = app.state.scheduler
        if scheduler is None:
            raise HTTPException(status_code=503, detail="monitor_not_ready")
        return scheduler.status()

    return app
