"""
orchestrator.py
---------------
FHT Message Service — Batch Orchestrator
----------------------------------------
Drives records from either front end through build → deliver.

Batch procedure (``process_batch``, shared by both front ends):

  Step 1  GROUP    Records are grouped by ``patient.patient_emr`` in
                   first-seen order.
  Step 2  RESOLVE  emr_directory.DirectoryResolver.resolve()
                   One import directory per group.  A failure marks every
                   non-silent record of that group as failed; other groups
                   carry on.
  Step 3  BUILD    hl7_builder.build_message()
                   Records are processed in input order.  A record without a
                   patient id or observation identifier fails alone.
  Step 4  DELIVER  delivery.deliver()
                   Write the file, or acknowledge a silent record.
  Step 5  SUMMARY  BatchSummary of written / silent / failed, logged and
                   returned to the caller (the stream sends it back).

Poll front end (``run_poll_loop``):
    while the ServiceControl is running:
        paused  → wait for resume
        else    → remote login + config  (fetch_effective_config)
                  GetUnsentMessages from the local API
                  process_batch
        wait the effective delay; a failed cycle is logged and waits too.

Configuration per cycle (``fetch_effective_config``):
    clientconfig.txt credentials → login → SystemConfig.  Any failure there
    raises ConfigUnavailable internally and is logged; the cycle continues
    with local settings (config_resolver.resolve_config).

Project: FHT Message Service
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from api_client import ApiClient
from config_resolver import EffectiveConfig, resolve_config
from crypto import Decryptor, NullDecryptor
from delivery import deliver
from discovery import discover_local_api_endpoint
from emr_directory import DirectoryResolver, RepositoryFactory, default_repositories
from errors import (
    ApiError,
    ConfigFileError,
    ConfigUnavailable,
    DirectoryError,
    DirectoryNotFound,
    InvalidRecord,
    WriteError,
)
from hl7_builder import SoftwareInfo, build_message
from schemas import BatchSummary, DeliveryOutcome, DeliveryStatus, RemoteConfig, ResultRecord
from settings import LocalSettings, read_client_credentials

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Service control
# ---------------------------------------------------------------------------

class ServiceControl:
    """
    Run / pause flags for the poll loop, safe to flip from any thread.

    ``stop()`` also wakes a loop that is waiting out its delay or sitting
    paused, so shutdown does not wait for the next cycle.
    """

    def __init__(self) -> None:
        self._stopped = threading.Event()
        self._resumed = threading.Event()
        self._resumed.set()

    @property
    def is_running(self) -> bool:
        return not self._stopped.is_set()

    @property
    def is_paused(self) -> bool:
        return self.is_running and not self._resumed.is_set()

    def stop(self) -> None:
        logger.info("ServiceControl: stop requested.")
        self._stopped.set()
        self._resumed.set()

    def pause(self) -> None:
        logger.info("ServiceControl: paused.")
        self._resumed.clear()

    def resume(self) -> None:
        logger.info("ServiceControl: resumed.")
        self._resumed.set()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True as soon as stop is requested."""
        if seconds <= 0:
            return not self.is_running
        return await asyncio.to_thread(self._stopped.wait, seconds)

    async def wait_for_resume(self, timeout: Optional[float] = None) -> bool:
        """Block until resumed or stopped; return True when no longer paused."""
        return await asyncio.to_thread(self._resumed.wait, timeout)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@dataclass
class PipelineDeps:
    """
    Collaborators shared by both front ends.  Tests replace individual
    fields; production code uses the defaults.
    """
    decryptor:          Decryptor = field(default_factory=NullDecryptor)
    discover:           Optional[Callable[[LocalSettings], Optional[str]]] = discover_local_api_endpoint
    repository_factory: RepositoryFactory = default_repositories
    hostname:           Optional[str] = None
    software:           SoftwareInfo = field(default_factory=SoftwareInfo)
    clock:              Clock = datetime.now
    transport:          Optional[httpx.AsyncBaseTransport] = None

    def make_resolver(self, config: EffectiveConfig) -> DirectoryResolver:
        return DirectoryResolver(config, self.repository_factory(config), self.hostname)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

async def fetch_remote_config(settings: LocalSettings, deps: PipelineDeps) -> Optional[RemoteConfig]:
    """
    Log in to the remote API and fetch this account's SystemConfig.

    Raises:
        ConfigUnavailable: no remote URL, unreadable credentials, or an API
            failure.  The cause is chained.
    """
    if not settings.aws_url:
        raise ConfigUnavailable("No remote API URL configured.")

    try:
        credentials = read_client_credentials(settings.client_config_path, deps.decryptor)
    except ConfigFileError as exc:
        raise ConfigUnavailable(str(exc)) from exc

    try:
        async with ApiClient(settings.aws_url, verify=settings.verify_tls, transport=deps.transport) as client:
            user = await client.login(credentials)
            return await client.get_config_info(user.account_id, settings.software_id, deps.decryptor)
    except ApiError as exc:
        raise ConfigUnavailable(f"Remote config unavailable: {exc}") from exc


async def fetch_effective_config(settings: LocalSettings, deps: PipelineDeps) -> EffectiveConfig:
    """Remote config when available, otherwise local values; never raises."""
    remote: Optional[RemoteConfig] = None
    try:
        remote = await fetch_remote_config(settings, deps)
        if remote is not None:
            logger.info("orchestrator: remote config obtained.")
    except ConfigUnavailable as exc:
        logger.warning("orchestrator: %s Using local config.", exc)

    discover = partial(deps.discover, settings) if deps.discover is not None else None

    # Discovery may block on a UDP socket for up to 20 s.
    return await asyncio.to_thread(resolve_config, settings, remote, discover)


# ---------------------------------------------------------------------------
# Batch procedure
# ---------------------------------------------------------------------------

def _group_by_emr(records: Sequence[ResultRecord]) -> Dict[str, List[ResultRecord]]:
    groups: Dict[str, List[ResultRecord]] = {}
    for record in records:
        groups.setdefault(record.emr_kind, []).append(record)
    return groups


def _process_record(
    record: ResultRecord,
    directory: Union[Path, DirectoryError],
    config: EffectiveConfig,
    software: SoftwareInfo,
    clock: Clock,
) -> DeliveryOutcome:
    generated_at = clock()
    try:
        message = build_message(
            record, config.message_variant, generated_at=generated_at, software=software
        )
        if isinstance(directory, DirectoryError):
            if record.is_silent:
                return DeliveryOutcome.for_record(record, DeliveryStatus.SILENT)
            return DeliveryOutcome.for_record(record, DeliveryStatus.FAILED, reason=directory.reason)
        return deliver(message, record, directory, record.emr_kind, generated_at=generated_at)
    except (InvalidRecord, WriteError) as exc:
        logger.error("orchestrator: record for patient '%s' failed: %s", record.patient.patient_id, exc)
        return DeliveryOutcome.for_record(record, DeliveryStatus.FAILED, reason=str(exc))
    except Exception as exc:
        logger.exception("orchestrator: unexpected error for patient '%s': %s", record.patient.patient_id, exc)
        return DeliveryOutcome.for_record(record, DeliveryStatus.FAILED, reason=f"Unexpected error: {exc}")


def process_batch(
    records: Sequence[ResultRecord],
    config: EffectiveConfig,
    *,
    resolver: Optional[DirectoryResolver] = None,
    software: Optional[SoftwareInfo] = None,
    clock: Clock = datetime.now,
) -> BatchSummary:
    """
    Build and deliver every record; one bad record or EMR group never stops
    the rest.

    Args:
        records:  Records in delivery order.
        config:   Effective configuration for this cycle.
        resolver: Directory resolver; defaults to database-backed lookups.
        software: Identity for MSH / SFT.
        clock:    Source of the per-record "generated at" timestamp.

    Returns:
        BatchSummary with one outcome per input record, in input order.
    """
    resolver = resolver or DirectoryResolver(config)
    software = software or SoftwareInfo()

    directories: Dict[str, Union[Path, DirectoryError]] = {}
    for emr_kind, group in _group_by_emr(records).items():
        try:
            directories[emr_kind] = resolver.resolve(emr_kind)
        except DirectoryError as exc:
            logger.error(
                "orchestrator: %d record(s) for EMR '%s' cannot be delivered: %s",
                len(group), emr_kind, exc.reason,
            )
            directories[emr_kind] = exc
        except Exception as exc:
            logger.exception("orchestrator: directory lookup for EMR '%s' failed: %s", emr_kind, exc)
            directories[emr_kind] = DirectoryNotFound(emr_kind, f"directory lookup failed: {exc}")

    outcomes = [
        _process_record(record, directories[record.emr_kind], config, software, clock)
        for record in records
    ]
    summary = BatchSummary.from_outcomes(outcomes)
    logger.info("orchestrator: %s.", summary.describe())
    return summary


# ---------------------------------------------------------------------------
# Poll front end
# ---------------------------------------------------------------------------

async def run_cycle(settings: LocalSettings, deps: PipelineDeps) -> Tuple[EffectiveConfig, BatchSummary]:
    """One poll cycle: config → unsent records → batch."""
    config = await fetch_effective_config(settings, deps)

    async with ApiClient(
        config.local_api_endpoint, verify=settings.verify_tls, transport=deps.transport
    ) as client:
        records = await client.get_unsent_messages()

    if not records:
        logger.info("orchestrator: no unsent result messages.")
        return config, BatchSummary()

    summary = await asyncio.to_thread(
        process_batch,
        records,
        config,
        resolver=deps.make_resolver(config),
        software=deps.software,
        clock=deps.clock,
    )
    return config, summary


async def run_poll_loop(
    settings: LocalSettings,
    control: ServiceControl,
    deps: Optional[PipelineDeps] = None,
) -> int:
    """
    Poll until *control* is stopped.

    Returns:
        Number of cycles attempted.
    """
    deps = deps or PipelineDeps()
    delay_ms = settings.delay_milliseconds
    cycles = 0
    logger.info("orchestrator: poll loop started (delay %d ms).", delay_ms)

    while control.is_running:
        if control.is_paused:
            await control.wait_for_resume()
            continue

        cycles += 1
        try:
            config, _ = await run_cycle(settings, deps)
            delay_ms = config.service_delay_ms
        except Exception as exc:
            logger.exception("orchestrator: cycle %d failed: %s", cycles, exc)

        if await control.wait(delay_ms / 1000):
            break

    logger.info("orchestrator: poll loop stopped after %d cycle(s).", cycles)
    return cycles
