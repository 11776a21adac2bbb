"""Command-line entry point for the field sync agent."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging

import httpx

from field_sync_client.config import ClientSettings
from field_sync_client.connectivity import ConnectivityMonitor, HttpHealthProbe
from field_sync_client.orchestrator import SyncOrchestrator
from field_sync_client.store import LocalIssueStore
from field_sync_client.transport import SubmissionClient

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the field issue sync agent")
    parser.add_argument("--api-url", help="Issue service base URL")
    parser.add_argument("--db", help="SQLite path for the offline queue")
    parser.add_argument("--interval", type=float, help="Seconds between periodic drains")
    parser.add_argument("--once", action="store_true", help="Run one drain cycle and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> ClientSettings:
    settings = ClientSettings.from_env()
    overrides = {}
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.db:
        overrides["db_path"] = args.db
    if args.interval:
        overrides["sync_interval"] = args.interval
    return settings.model_copy(update=overrides) if overrides else settings


async def main_async(args: argparse.Namespace) -> None:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    settings = build_settings(args)

    async with LocalIssueStore(settings.db_path) as store, httpx.AsyncClient(
        base_url=settings.api_url, timeout=settings.request_timeout
    ) as http:
        monitor = ConnectivityMonitor()
        probe = HttpHealthProbe(http)
        orchestrator = SyncOrchestrator(
            store,
            SubmissionClient(http, auth_token=settings.auth_token),
            monitor,
            policy=settings.retry_policy(),
            lease_seconds=settings.lease_seconds,
            interval=settings.sync_interval,
        )

        if args.once:
            monitor.report(await probe())
            await orchestrator.drain()
            print(json.dumps(await orchestrator.status(), indent=2))
            return

        _LOGGER.info("Starting sync agent against %s", settings.api_url)
        probe_task = asyncio.create_task(monitor.run(probe, settings.probe_interval))
        try:
            await orchestrator.run()
        finally:
            probe_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await probe_task


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")


if __name__ == "__main__":
    main()
