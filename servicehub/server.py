from __future__ import annotations

import argparse
import asyncio
import json

import httpx
import structlog
import uvicorn

from servicehub.app import create_app
from servicehub.logs import configure_logging
from servicehub.probe import ProbeClient
from servicehub.reconcile import CycleReport, ReconciliationCycle
from servicehub.settings import DashboardSettings, load_settings
from servicehub.store import create_store


logger = structlog.get_logger(__name__)


async def run_single_cycle(settings: DashboardSettings) -> CycleReport:
    """Run one reconciliation against the configured store, outside the web server."""
    store = create_store(settings)
    try:
        async with httpx.AsyncClient(
            headers={"User-Agent": settings.user_agent},
            timeout=settings.probe_timeout_seconds,
        ) as client:
            probe_client = ProbeClient(client, timeout_seconds=settings.probe_timeout_seconds)
            cycle = ReconciliationCycle(store, probe_client, concurrency=settings.probe_concurrency)
            return await cycle.run_once()
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="ServiceHub health dashboard")
    parser.add_argument("--config", default=None, help="Path to YAML config (defaults to $SERVICEHUB_CONFIG)")
    parser.add_argument("--once", action="store_true", help="Run one reconciliation cycle, print the report and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    configure_logging(args.log_level or settings.log_level, json_output=settings.log_json)

    if args.once:
        if settings.store_backend == "memory":
            # A fresh in-memory store has no registered services to probe.
            logger.error("--once needs a persistent store", store=settings.store_backend)
            return 2
        report = asyncio.run(run_single_cycle(settings))
        print(json.dumps(report.as_dict(), indent=2))
        return 1 if report.aborted else 0

    logger.info(
        "Starting ServiceHub",
        host=settings.host,
        port=settings.port,
        store=settings.store_backend,
        monitor_enabled=settings.monitor_enabled,
        poll_interval_seconds=settings.poll_interval_seconds,
    )
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=str(args.log_level or settings.log_level).lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
