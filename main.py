"""
main.py
-------
FHT Message Service — FastAPI server and command line
-----------------------------------------------------
Delivers Future Health Today result messages into practice EMR import
directories as HL7 files.  Two front ends feed the same batch procedure:

Endpoints (``python main.py stream``):
    GET  /health           — Service health check
    WS   /ResultMessages   — Stream of JSON result-record arrays; progress and
                             summary lines are sent back as text
    GET  /ResultMessages   — 400, a WebSocket upgrade is required

Commands:
    python main.py stream                      Serve the endpoints on ``Port``.
    python main.py poll                        Poll the local API until stopped.
    python main.py compose --emr BestPractice  Type one record and deliver it.

Options:
    --settings PATH   appsettings.json location (else $FHT_SETTINGS_PATH).
    --verbose         DEBUG logging.

Project: FHT Message Service
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from fastapi import Depends, FastAPI, HTTPException, WebSocket

from console_input import create_record_from_console
from errors import ConfigFileError, InvalidRecord
from hl7_builder import SoftwareInfo
from orchestrator import PipelineDeps, ServiceControl, fetch_effective_config, process_batch, run_poll_loop
from schemas import EmrKind
from settings import LocalSettings, load_local_settings
from stream import serve_result_messages

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "FHT Message Service"
RESULT_MESSAGES_ROUTE = "/ResultMessages"


@lru_cache(maxsize=1)
def get_settings() -> LocalSettings:
    """Local settings, loaded once per process."""
    return load_local_settings()


@lru_cache(maxsize=1)
def get_pipeline_deps() -> PipelineDeps:
    return PipelineDeps(software=SoftwareInfo(version=VERSION))


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Writes FHT result messages into EMR import directories as HL7 files.",
)


@app.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get(RESULT_MESSAGES_ROUTE)
def result_messages_http() -> dict:
    """Plain HTTP requests are rejected; clients must open a WebSocket."""
    raise HTTPException(status_code=400, detail="WebSocket connection required.")


@app.websocket(RESULT_MESSAGES_ROUTE)
async def result_messages(
    websocket: WebSocket,
    settings: LocalSettings = Depends(get_settings),
    deps: PipelineDeps = Depends(get_pipeline_deps),
) -> None:
    await serve_result_messages(websocket, settings, deps)


# ── Commands ───────────────────────────────────────────────────────────────────

def run_stream(settings: LocalSettings) -> int:
    logger.info("main: serving %s on port %d.", RESULT_MESSAGES_ROUTE, settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level="info")
    return 0


def run_poll(settings: LocalSettings) -> int:
    control = ServiceControl()

    async def _poll() -> int:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, control.stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                signal.signal(sig, lambda *_: control.stop())
        return await run_poll_loop(settings, control, get_pipeline_deps())

    asyncio.run(_poll())
    return 0


def run_compose(settings: LocalSettings, emr: str) -> int:
    deps = get_pipeline_deps()
    try:
        record = create_record_from_console(emr=emr)
    except InvalidRecord as exc:
        logger.error("main: %s", exc)
        return 1

    config = asyncio.run(fetch_effective_config(settings, deps))
    summary = process_batch(
        [record],
        config,
        resolver=deps.make_resolver(config),
        software=deps.software,
        clock=deps.clock,
    )
    print(summary.describe())
    for outcome in summary.outcomes:
        if outcome.path:
            print(outcome.path)
        if outcome.reason:
            print(outcome.reason)
    return 0 if summary.failed == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="main.py", description=SERVICE_NAME)
    parser.add_argument("--settings", help="Path to appsettings.json.")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging.")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("stream", help="Serve the result message WebSocket (default).")
    commands.add_parser("poll", help="Poll the local API for unsent messages.")
    compose = commands.add_parser("compose", help="Enter one record on the console and deliver it.")
    compose.add_argument(
        "--emr",
        default=EmrKind.BEST_PRACTICE.value,
        choices=[kind.value for kind in EmrKind],
        help="Target EMR software.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.settings:
        os.environ["FHT_SETTINGS_PATH"] = args.settings

    try:
        settings = get_settings()
    except ConfigFileError as exc:
        logger.error("main: %s", exc)
        return 2

    command = args.command or "stream"
    if command == "poll":
        return run_poll(settings)
    if command == "compose":
        return run_compose(settings, args.emr)
    return run_stream(settings)


if __name__ == "__main__":
    sys.exit(main())
