from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from servicehub.models import STATUS_DOWN, STATUS_UP


logger = structlog.get_logger(__name__)

HEALTH_PATH = "/actuator/health"
INFO_PATH = "/actuator/info"
STREAMS_PATH = "/actuator/kafkastreams"

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class HealthProbeResult:
    status: str
    components: Any = None
    status_code: int | None = None
    error: str | None = None
    elapsed_ms: float | None = None

    @property
    def is_up(self) -> bool:
        return self.status == STATUS_UP


@dataclass(frozen=True)
class InfoProbeResult:
    version: str | None
    branch: str | None
    build_time: str | None


@dataclass(frozen=True)
class StreamsProbeResult:
    state: str | None
    threads: str | None
    topics: str | None
    partitions: str | None


@dataclass(frozen=True)
class ServiceProbe:
    """Outcome of the three sub-probes for one service. info/streams None means "leave stored record as is"."""

    health: HealthProbeResult
    info: InfoProbeResult | None = None
    streams: StreamsProbeResult | None = None


def join_url(base_url: str, path: str) -> str:
    return (base_url or "").strip().rstrip("/") + path


def _as_text(value: Any) -> str | None:
    """Scalar to text; lists joined with "," (nested lists flattened, nulls empty)."""
    if value is None:
        return None
    if isinstance(value, list):
        return ",".join(_as_text(v) or "" for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _topics_text(value: Any) -> str | None:
    if not isinstance(value, list):
        return None
    return ", ".join(_as_text(v) or "" for v in value)


def _nested(body: dict[str, Any], *keys: str) -> Any:
    cur: Any = body
    for k in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(k)
    return cur


def _decode_object(resp: httpx.Response) -> dict[str, Any] | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def parse_info(body: dict[str, Any]) -> InfoProbeResult | None:
    version = _nested(body, "build", "version")
    branch = _nested(body, "git", "branch")
    build_time = _nested(body, "build", "time")
    if version is None and branch is None and build_time is None:
        return None
    return InfoProbeResult(
        version=_as_text(version),
        branch=_as_text(branch),
        build_time=_as_text(build_time),
    )


def parse_streams(body: dict[str, Any]) -> StreamsProbeResult | None:
    state = body.get("state")
    threads = body.get("threads")
    topics = body.get("topics")
    partitions = body.get("partitions")
    if state is None and threads is None and topics is None and partitions is None:
        return None
    return StreamsProbeResult(
        state=_as_text(state),
        threads=_as_text(threads),
        topics=_topics_text(topics),
        partitions=_as_text(partitions),
    )


class ProbeClient:
    """
    Actuator probe client.

    Transport failures never propagate: health degrades to DOWN, info/streams soft-fail to None.
    The httpx client is owned by the caller (one shared AsyncClient per process).
    """

    def __init__(self, http_client: httpx.AsyncClient, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._http = http_client
        self.timeout_seconds = float(timeout_seconds)

    async def _get(self, url: str) -> httpx.Response:
        # httpx timeouts apply per connect/read step; wait_for bounds the whole exchange.
        return await asyncio.wait_for(
            self._http.get(url, timeout=self.timeout_seconds),
            timeout=self.timeout_seconds,
        )

    async def probe_health(self, base_url: str) -> HealthProbeResult:
        url = join_url(base_url, HEALTH_PATH)
        started = time.perf_counter()
        try:
            resp = await self._get(url)
        except asyncio.TimeoutError:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
            logger.info("Health probe timed out", url=url, timeout_seconds=self.timeout_seconds, elapsed_ms=elapsed_ms)
            return HealthProbeResult(
                status=STATUS_DOWN,
                error=f"timeout: TimeoutError after {self.timeout_seconds}s",
                elapsed_ms=elapsed_ms,
            )
        except httpx.HTTPError as e:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
            logger.info("Health probe failed", url=url, error=f"{type(e).__name__}: {e}", elapsed_ms=elapsed_ms)
            return HealthProbeResult(
                status=STATUS_DOWN,
                error=f"http_error: {type(e).__name__}: {e}",
                elapsed_ms=elapsed_ms,
            )

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        body = _decode_object(resp)
        # Spring reports component detail on 503 as well; keep it whenever present.
        components = body.get("components") if body is not None else None

        if body is None:
            error = "invalid_body"
        elif resp.status_code != 200:
            error = f"status_code: {resp.status_code}"
        elif body.get("status") != STATUS_UP:
            error = f"status: {body.get('status')!r}"
        else:
            error = None

        status = STATUS_UP if error is None else STATUS_DOWN
        if error is not None:
            logger.info("Service health DOWN", url=url, status_code=resp.status_code, reason=error)
        return HealthProbeResult(
            status=status,
            components=components,
            status_code=resp.status_code,
            error=error,
            elapsed_ms=elapsed_ms,
        )

    async def _get_object(self, url: str, probe: str) -> dict[str, Any] | None:
        try:
            resp = await self._get(url)
        except asyncio.TimeoutError:
            logger.info("Probe soft-failed", probe=probe, url=url, reason="timeout", timeout_seconds=self.timeout_seconds)
            return None
        except httpx.HTTPError as e:
            logger.info("Probe soft-failed", probe=probe, url=url, error=f"{type(e).__name__}: {e}")
            return None
        if resp.status_code != 200:
            logger.info("Probe soft-failed", probe=probe, url=url, status_code=resp.status_code)
            return None
        body = _decode_object(resp)
        if body is None:
            logger.info("Probe soft-failed", probe=probe, url=url, reason="invalid_body")
        return body

    async def probe_info(self, base_url: str) -> InfoProbeResult | None:
        url = join_url(base_url, INFO_PATH)
        body = await self._get_object(url, "info")
        if body is None:
            return None
        result = parse_info(body)
        if result is None:
            logger.debug("Info probe has no build/git fields", url=url)
        return result

    async def probe_streams(self, base_url: str) -> StreamsProbeResult | None:
        url = join_url(base_url, STREAMS_PATH)
        body = await self._get_object(url, "streams")
        if body is None:
            return None
        result = parse_streams(body)
        if result is None:
            logger.debug("Streams probe has no fields", url=url)
        return result

    async def probe_service(self, base_url: str) -> ServiceProbe:
        health, info, streams = await asyncio.gather(
            self.probe_health(base_url),
            self.probe_info(base_url),
            self.probe_streams(base_url),
            return_exceptions=True,
        )

        if isinstance(health, BaseException):
            logger.warning("Health probe crashed", base_url=base_url, error=f"{type(health).__name__}: {health}")
            health = HealthProbeResult(status=STATUS_DOWN, error=f"probe_crashed: {type(health).__name__}: {health}")
        if isinstance(info, BaseException):
            logger.warning("Info probe crashed", base_url=base_url, error=f"{type(info).__name__}: {info}")
            info = None
        if isinstance(streams, BaseException):
            logger.warning("Streams probe crashed", base_url=base_url, error=f"{type(streams).__name__}: {streams}")
            streams = None

        return ServiceProbe(health=health, info=info, streams=streams)
