"""
brawlsync - Main Entry Point
============================

Usage:
    brawlsync worker              # sweep timer + refresh workers until stopped
    brawlsync tick                # run one sweep tick and print its report
    brawlsync drain --limit 50    # process queued refresh jobs once
    brawlsync api --with-worker   # ops API, optionally hosting the worker
    brawlsync init-db             # create MongoDB indexes
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from brawlsync.api.app import create_app
from brawlsync.core.config import SyncSettings, get_settings
from brawlsync.core.db import close_db, init_indexes
from brawlsync.core.errors import BrawlSyncError
from brawlsync.runtime import SyncRuntime, build_runtime
from brawlsync.utils.logger import get_logger, mask_url, setup_logging

log = get_logger(__name__)


def _describe(settings: SyncSettings) -> None:
    store = mask_url(settings.redis_url) if settings.redis_url else "in-memory"
    log.info(
        f"Budget {settings.limiter.capacity} requests per {settings.limiter.refill_interval:.0f}s, "
        f"store {store}, brackets {', '.join(settings.sweep.brackets)}"
    )


async def run_worker(settings: SyncSettings) -> None:
    runtime = build_runtime(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await runtime.start()
    try:
        await stop.wait()
    finally:
        log.info("Worker shutting down...")
        await runtime.stop()


async def run_tick(settings: SyncSettings) -> dict:
    runtime = build_runtime(settings)
    try:
        report = await runtime.sweep.tick()
    finally:
        await runtime.close()
    return report.to_dict()


async def run_drain(settings: SyncSettings, limit: Optional[int]) -> dict:
    runtime: SyncRuntime = build_runtime(settings)
    try:
        processed = await runtime.consumer.drain(limit)
        counters = dict(runtime.consumer.counters)
    finally:
        await runtime.close()
    return {"processed": processed, **counters}


async def run_init_db() -> None:
    try:
        await init_indexes()
    finally:
        await close_db()


def run_api(settings: SyncSettings, host: str, port: int, with_worker: bool) -> None:
    app = create_app(build_runtime(settings), start_runtime=with_worker)
    uvicorn.run(app, host=host, port=port, log_level="info")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="brawlsync", description="Brawlhalla data sync worker")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run the sweep timer and refresh workers")
    sub.add_parser("tick", help="Run a single sweep tick")

    drain = sub.add_parser("drain", help="Process queued refresh jobs once")
    drain.add_argument("--limit", type=int, default=None, help="Stop after this many jobs")

    api = sub.add_parser("api", help="Serve the ops API")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=8000)
    api.add_argument("--with-worker", action="store_true", help="Also run the worker in the API process")

    sub.add_parser("init-db", help="Create MongoDB indexes")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        if args.command == "init-db":
            asyncio.run(run_init_db())
            return 0

        settings = get_settings()
        settings.validate()
        _describe(settings)

        if args.command == "worker":
            asyncio.run(run_worker(settings))
        elif args.command == "tick":
            print(json.dumps(asyncio.run(run_tick(settings)), indent=2))
        elif args.command == "drain":
            print(json.dumps(asyncio.run(run_drain(settings, args.limit)), indent=2))
        elif args.command == "api":
            run_api(settings, args.host, args.port, args.with_worker)
    except BrawlSyncError as exc:
        log.critical(f"{type(exc).__name__}: {exc.message}")
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


__all__ = ["build_runtime", "build_parser", "main"]


if __name__ == "__main__":
    sys.exit(main())
