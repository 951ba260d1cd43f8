"""
stream.py
---------
FHT Message Service — Result Message Stream (WebSocket front end)
-----------------------------------------------------------------
Serves ``/ResultMessages``.  A client sends JSON arrays of result records as
text messages; every array is processed as one batch and the service
answers with plain-text progress and summary lines:

    → [{"Patient": {...}, "Observation": {...}, ...}, ...]
    ← Received 5 result messages
    ← Wrote 4 messages, 0 silent, 1 failed

Framing:
  - Message fragments are joined until the end-of-message boundary, then
    trailing / leading NUL padding is trimmed before JSON parsing.  The ASGI
    server already reassembles protocol-level continuation frames, so each
    received message is fed to the assembler as final.
  - A binary message closes the connection with 1003 (unsupported data).
  - A payload that is not a JSON array of records closes with 1007.
  - Each receive is bounded by ``IdleTimeoutSeconds``; an idle connection
    is closed normally.

Batches on one connection run sequentially; file writes run in a worker
thread so other connections keep being served.

Project: FHT Message Service
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from errors import StreamProtocolError
from orchestrator import PipelineDeps, fetch_effective_config, process_batch
from schemas import BatchSummary, ResultRecord, parse_records
from settings import LocalSettings

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_INVALID_PAYLOAD = 1007


class PayloadAssembler:
    """Joins message fragments until the final one arrives."""

    def __init__(self) -> None:
        self._parts: List[str] = []

    def feed(self, text: str, final: bool = True) -> Optional[str]:
        """Buffer *text*; return the complete NUL-trimmed payload when *final*."""
        self._parts.append(text)
        if not final:
            return None
        payload = "".join(self._parts).strip("\0")
        self._parts = []
        return payload


def parse_payload(text: str) -> List[ResultRecord]:
    """
    Decode one assembled payload into records.

    Raises:
        StreamProtocolError: not JSON, not an array, or an invalid record
            (close code 1007).
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StreamProtocolError(f"Payload is not valid JSON: {exc}", CLOSE_INVALID_PAYLOAD) from exc

    if not isinstance(data, list):
        raise StreamProtocolError("Payload must be a JSON array of result messages.", CLOSE_INVALID_PAYLOAD)

    try:
        return parse_records(data)
    except ValidationError as exc:
        raise StreamProtocolError(f"Payload contains invalid result messages: {exc}", CLOSE_INVALID_PAYLOAD) from exc


def _plural(count: int) -> str:
    return "result message" if count == 1 else "result messages"


async def _send_best_effort(websocket: WebSocket, text: str) -> None:
    try:
        await websocket.send_text(text)
    except (RuntimeError, WebSocketDisconnect) as exc:
        logger.debug("stream: could not send '%s': %s", text, exc)


async def _close_best_effort(websocket: WebSocket, code: int) -> None:
    try:
        await websocket.close(code=code)
    except RuntimeError as exc:
        logger.debug("stream: close(%d) ignored: %s", code, exc)


async def process_payload(
    records: List[ResultRecord],
    settings: LocalSettings,
    deps: PipelineDeps,
) -> BatchSummary:
    """Resolve this batch's configuration and run the batch procedure."""
    config = await fetch_effective_config(settings, deps)
    return await asyncio.to_thread(
        process_batch,
        records,
        config,
        resolver=deps.make_resolver(config),
        software=deps.software,
        clock=deps.clock,
    )


async def serve_result_messages(
    websocket: WebSocket,
    settings: LocalSettings,
    deps: PipelineDeps,
) -> None:
    """Accept one connection and process its batches until it closes."""
    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "<unknown>"
    logger.info("stream: connection opened from %s.", client)
    assembler = PayloadAssembler()

    try:
        while True:
            try:
                message: Any = await asyncio.wait_for(
                    websocket.receive(), timeout=settings.idle_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.info("stream: %s idle for %.0fs, closing.", client, settings.idle_timeout_seconds)
                await _close_best_effort(websocket, CLOSE_NORMAL)
                return

            if message["type"] == "websocket.disconnect":
                logger.info("stream: %s disconnected.", client)
                return

            text = message.get("text")
            if text is None:
                raise StreamProtocolError("Only text messages are supported.", CLOSE_UNSUPPORTED_DATA)

            payload = assembler.feed(text, final=True)
            if payload is None:
                continue

            records = parse_payload(payload)
            logger.info("stream: %d record(s) received from %s.", len(records), client)
            await websocket.send_text(f"Received {len(records)} {_plural(len(records))}")

            summary = await process_payload(records, settings, deps)
            await websocket.send_text(summary.describe())

    except StreamProtocolError as exc:
        logger.warning("stream: closing %s (%d): %s", client, exc.close_code, exc)
        await _send_best_effort(websocket, f"Error: {exc}")
        await _close_best_effort(websocket, exc.close_code)
    except WebSocketDisconnect:
        logger.info("stream: %s disconnected.", client)
