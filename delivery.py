"""
delivery.py
-----------
FHT Message Service — Delivery Writer
-------------------------------------
Writes one built HL7 message into an EMR import directory.

Steps for a non-silent record:
  1. Serialise the message (``\\r\\n`` between segments).
  2. MedicalDirector only: replace every character from U+0080 to U+00FF
     with the RTF-style escape ``\\'xx`` (lowercase hex).  Characters above
     U+00FF have no single-byte form and fail the record.
  3. Name the file ``fht_<patientId>_<observationText>_<ticks>.hl7``.
  4. Create the directory, write Latin-1 to a temporary file beside the
     target and hard-link it into place, so the EMR never picks up a
     half-written file and an existing file is never replaced.

Silent records are acknowledged without touching the filesystem.

Public API:
    medical_director_text_conversion()
    dotnet_ticks()
    create_filename()
    deliver()

Project: FHT Message Service
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Union

from errors import WriteError
from hl7_builder import WireMessage
from schemas import DeliveryOutcome, DeliveryStatus, EmrKind, ResultRecord

logger = logging.getLogger(__name__)

FILENAME_PREFIX = "fht"
FILE_EXTENSION = ".hl7"
FILE_ENCODING = "latin-1"

_TICKS_EPOCH = datetime(1, 1, 1)
_ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


def medical_director_text_conversion(text: str) -> str:
    """
    Escape non-ASCII characters the way MedicalDirector expects.

    ``"é"`` (U+00E9) becomes ``"\\'e9"``.

    Raises:
        ValueError: *text* contains a character above U+00FF.
    """
    out = []
    for ch in text:
        code = ord(ch)
        if code < 0x80:
            out.append(ch)
        elif code <= 0xFF:
            out.append(f"\\'{code:02x}")
        else:
            raise ValueError(f"character U+{code:04X} cannot be encoded for MedicalDirector")
    return "".join(out)


def dotnet_ticks(value: datetime) -> int:
    """Number of 100 ns intervals between 0001-01-01 and *value* (wall clock)."""
    delta = value.replace(tzinfo=None) - _TICKS_EPOCH
    return delta // timedelta(microseconds=1) * 10


def create_filename(record: ResultRecord, generated_at: datetime, *, ticks_offset: int = 0) -> str:
    patient_id = record.patient.patient_id
    identifier_text = record.observation.observation_identifier_text
    ticks = dotnet_ticks(generated_at) + ticks_offset
    name = f"{FILENAME_PREFIX}_{patient_id}_{identifier_text}_{ticks}{FILE_EXTENSION}"
    name = _WHITESPACE.sub("", name).lower()
    return _ILLEGAL_FILENAME_CHARS.sub("", name)


def _write_unique(directory: Path, record: ResultRecord, generated_at: datetime, content: str) -> Path:
    """
    Write *content* to a temporary file and hard-link it to a free name.

    ``os.link`` refuses an existing target, so two writers racing for the
    same name never overwrite each other; the loser steps the tick forward.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{FILENAME_PREFIX}_", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding=FILE_ENCODING, errors="replace", newline="") as f:
            f.write(content)
        offset = 0
        while True:
            path = directory / create_filename(record, generated_at, ticks_offset=offset)
            try:
                os.link(tmp_name, path)
                return path
            except FileExistsError:
                offset += 1
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


def deliver(
    message: WireMessage,
    record: ResultRecord,
    target_dir: Union[str, Path],
    emr_kind: str,
    *,
    generated_at: Optional[datetime] = None,
) -> DeliveryOutcome:
    """
    Write *message* for *record* into *target_dir*.

    Args:
        message:      Built HL7 message.
        record:       Source record (filename parts, silent flag).
        target_dir:   EMR import directory; created if missing.
        emr_kind:     Selects the MedicalDirector text conversion.
        generated_at: Timestamp for the filename ticks.  Defaults to now.

    Returns:
        DeliveryOutcome: ``written`` with the file path, or ``silent``.

    Raises:
        WriteError: serialisation, encoding or filesystem failure; the
            original exception is chained.
    """
    patient_id, observation_identifier = record.identity
    if record.is_silent:
        logger.info(
            "delivery: silent result for patient %s (%s), no file written.",
            patient_id, observation_identifier,
        )
        return DeliveryOutcome.for_record(record, DeliveryStatus.SILENT)

    generated_at = generated_at or datetime.now()
    try:
        content = message.serialize()
        if emr_kind == EmrKind.MEDICAL_DIRECTOR.value:
            content = medical_director_text_conversion(content)

        directory = Path(target_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = _write_unique(directory, record, generated_at, content)
    except (OSError, ValueError) as exc:
        raise WriteError(
            f"Cannot write message for patient {patient_id} ({observation_identifier}): {exc}"
        ) from exc

    logger.info("delivery: wrote '%s'.", path)
    return DeliveryOutcome.for_record(record, DeliveryStatus.WRITTEN, path=str(path))
