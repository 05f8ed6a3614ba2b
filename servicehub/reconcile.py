from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from servicehub.models import STATUS_DOWN, STATUS_UP, Service, iso_ts
from servicehub.probe import HealthProbeResult, ProbeClient, ServiceProbe
from servicehub.store.base import RecordStore


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _ServiceOutcome:
    service_id: str
    status: str
    info_written: bool = False
    streams_written: bool = False
    write_failures: int = 0


@dataclass(frozen=True)
class CycleReport:
    started_at_ts: float
    finished_at_ts: float
    services_total: int = 0
    up: int = 0
    down: int = 0
    info_updates: int = 0
    streams_updates: int = 0
    write_failures: int = 0
    failed_service_ids: tuple[str, ...] = field(default_factory=tuple)
    aborted: bool = False
    error: str | None = None

    @property
    def duration_ms(self) -> float:
        return round((self.finished_at_ts - self.started_at_ts) * 1000.0, 3)

    def as_dict(self) -> dict[str, Any]:
        return {
            "startedAt": iso_ts(self.started_at_ts),
            "finishedAt": iso_ts(self.finished_at_ts),
            "durationMs": self.duration_ms,
            "servicesTotal": self.services_total,
            "up": self.up,
            "down": self.down,
            "infoUpdates": self.info_updates,
            "streamsUpdates": self.streams_updates,
            "writeFailures": self.write_failures,
            "failedServiceIds": list(self.failed_service_ids),
            "aborted": self.aborted,
            "error": self.error,
        }


class ReconciliationCycle:
    """
    One pass over the registered services: probe each one and upsert the results.

    Services are probed concurrently (bounded by `concurrency`). A crash while probing one
    service is recorded as DOWN for that service; a failed write is logged and counted.
    Neither affects other services.
    """

    def __init__(self, store: RecordStore, probe_client: ProbeClient, *, concurrency: int = 16) -> None:
        self.store = store
        self.probe_client = probe_client
        self.concurrency = max(1, int(concurrency))

    async def run_once(self) -> CycleReport:
        started = time.time()
        try:
            services: list[Service] = await asyncio.to_thread(self.store.list_services)
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            logger.exception("Reconciliation aborted: cannot list services", error=err)
            return CycleReport(started_at_ts=started, finished_at_ts=time.time(), aborted=True, error=err)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _safe_reconcile(service: Service) -> _ServiceOutcome:
            async with semaphore:
                try:
                    probe = await self.probe_client.probe_service(service.url)
                except Exception as exc:
                    err = f"{type(exc).__name__}: {exc}"
                    logger.exception("Service probe crashed", service_id=service.id, error=err)
                    probe = ServiceProbe(health=HealthProbeResult(status=STATUS_DOWN, error=f"probe_crashed: {err}"))
            return await self._persist(service, probe)

        outcomes = await asyncio.gather(*(_safe_reconcile(s) for s in services))

        report = CycleReport(
            started_at_ts=started,
            finished_at_ts=time.time(),
            services_total=len(services),
            up=sum(1 for o in outcomes if o.status == STATUS_UP),
            down=sum(1 for o in outcomes if o.status != STATUS_UP),
            info_updates=sum(1 for o in outcomes if o.info_written),
            streams_updates=sum(1 for o in outcomes if o.streams_written),
            write_failures=sum(o.write_failures for o in outcomes),
            failed_service_ids=tuple(o.service_id for o in outcomes if o.write_failures),
        )
        logger.info(
            "Reconciliation cycle complete",
            services=report.services_total,
            up=report.up,
            down=report.down,
            info_updates=report.info_updates,
            streams_updates=report.streams_updates,
            write_failures=report.write_failures,
            duration_ms=report.duration_ms,
        )
        return report

    async def _persist(self, service: Service, probe: ServiceProbe) -> _ServiceOutcome:
        observed = time.time()
        failures = 0

        # Health is written on every cycle; DOWN is a normal outcome.
        try:
            await asyncio.to_thread(
                self.store.upsert_health,
                service.id,
                status=probe.health.status,
                components=probe.health.components,
                observed_at_ts=observed,
            )
        except Exception as e:
            failures += 1
            logger.exception("Health upsert failed", service_id=service.id, error=f"{type(e).__name__}: {e}")

        info_written = False
        if probe.info is not None:
            try:
                await asyncio.to_thread(
                    self.store.upsert_info,
                    service.id,
                    version=probe.info.version,
                    branch=probe.info.branch,
                    build_time=probe.info.build_time,
                    observed_at_ts=observed,
                )
                info_written = True
            except Exception as e:
                failures += 1
                logger.exception("Info upsert failed", service_id=service.id, error=f"{type(e).__name__}: {e}")

        streams_written = False
        if probe.streams is not None:
            try:
                await asyncio.to_thread(
                    self.store.upsert_streams,
                    service.id,
                    state=probe.streams.state,
                    threads=probe.streams.threads,
                    topics=probe.streams.topics,
                    partitions=probe.streams.partitions,
                    observed_at_ts=observed,
                )
                streams_written = True
            except Exception as e:
                failures += 1
                logger.exception("Streams upsert failed", service_id=service.id, error=f"{type(e).__name__}: {e}")

        return _ServiceOutcome(
            service_id=service.id,
            status=probe.health.status,
            info_written=info_written,
            streams_written=streams_written,
            write_failures=failures,
        )
