"""
test_delivery.py
----------------
FHT Message Service — Test Suite for delivery.py
------------------------------------------------
Tests cover:
    - MedicalDirector escaping (é → \\'e9) and rejection above U+00FF
    - .NET tick computation and filename rules
    - Latin-1 file content with CR LF segment separators
    - Silent records write nothing
    - Directory creation and no leftover temporary files
    - Same-tick collisions get distinct filenames; existing files are kept
    - Filesystem failures raise WriteError with the cause chained

Run:
    pytest tests/test_delivery.py -v --tb=short

Project: FHT Message Service
"""

import pytest
import sys
import os
from datetime import datetime
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from delivery import create_filename, deliver, dotnet_ticks, medical_director_text_conversion
from errors import WriteError
from hl7_builder import SoftwareInfo, build_message
from schemas import DeliveryStatus, ResultRecord


GENERATED_AT = datetime(2024, 3, 5, 14, 30, 15, 123400)


def _record(patient_id="1001", text="Chronic kidney disease", family="Citizen", silent=False, emr="BestPractice"):
    return ResultRecord.model_validate({
        "Patient": {"PatientId": patient_id, "PatientFamilyName": family, "PatientEmr": emr},
        "Observation": {"ObservationIdentifier": "FHT-CKD", "ObservationIdentifierText": text},
        "IsSilent": silent,
    })


def _message(record):
    return build_message(record, generated_at=GENERATED_AT, software=SoftwareInfo(version="1.0.0"))


# ── MedicalDirector conversion ─────────────────────────────────────────────────

def test_md_conversion_escapes_latin1():
    """é becomes \\'e9."""
    assert medical_director_text_conversion("Zoé") == "Zo\\'e9"


def test_md_conversion_leaves_ascii():
    """ASCII text, including HL7 delimiters, is unchanged."""
    assert medical_director_text_conversion("MSH|^~\\&|x\r\n") == "MSH|^~\\&|x\r\n"


def test_md_conversion_lowercase_hex():
    """Hex digits are lowercase."""
    assert medical_director_text_conversion("ÿ") == "\\'ff"


def test_md_conversion_rejects_wide_characters():
    """Characters above U+00FF cannot be represented."""
    with pytest.raises(ValueError):
        medical_director_text_conversion("€")


# ── Filenames ──────────────────────────────────────────────────────────────────

def test_dotnet_ticks_epoch():
    """0001-01-01 is tick zero; one second is 10 million ticks."""
    assert dotnet_ticks(datetime(1, 1, 1)) == 0
    assert dotnet_ticks(datetime(1, 1, 1, 0, 0, 1)) == 10_000_000


def test_dotnet_ticks_known_value():
    """2000-01-01 matches DateTime.Ticks."""
    assert dotnet_ticks(datetime(2000, 1, 1)) == 630822816000000000


def test_filename_pattern():
    """fht_<id>_<text>_<ticks>.hl7, no spaces, lower case."""
    name = create_filename(_record(patient_id="AB 12"), GENERATED_AT)
    assert name == f"fht_ab12_chronickidneydisease_{dotnet_ticks(GENERATED_AT)}.hl7"


def test_filename_strips_illegal_characters():
    """Path separators and other illegal characters are removed."""
    name = create_filename(_record(text='eGFR <60/min?'), GENERATED_AT)
    assert "/" not in name and "<" not in name and "?" not in name
    assert name.startswith("fht_1001_egfr60min_")


def test_filenames_differ_by_identity():
    """Different records at the same instant get different names."""
    a = create_filename(_record(patient_id="1"), GENERATED_AT)
    b = create_filename(_record(patient_id="2"), GENERATED_AT)
    assert a != b


# ── deliver ────────────────────────────────────────────────────────────────────

def test_deliver_writes_latin1_file(tmp_path):
    """The file holds the serialised message encoded as Latin-1."""
    record = _record(family="Zoé")
    message = _message(record)
    outcome = deliver(message, record, tmp_path, "BestPractice", generated_at=GENERATED_AT)

    assert outcome.status is DeliveryStatus.WRITTEN
    data = open(outcome.path, "rb").read()
    assert data == message.serialize().encode("latin-1")
    assert b"\r\n" in data
    assert b"Zo\xe9" in data


def test_deliver_medical_director_escapes(tmp_path):
    """MedicalDirector files carry \\'xx escapes instead of raw bytes."""
    record = _record(family="Zoé", emr="MedicalDirector")
    outcome = deliver(_message(record), record, tmp_path, "MedicalDirector", generated_at=GENERATED_AT)
    data = open(outcome.path, "rb").read()
    assert b"Zo\\'e9" in data
    assert all(byte < 0x80 for byte in data)


def test_deliver_medical_director_wide_character_fails(tmp_path):
    """A character above U+00FF fails the record for MedicalDirector."""
    record = _record(family="Wang 王", emr="MedicalDirector")
    with pytest.raises(WriteError) as excinfo:
        deliver(_message(record), record, tmp_path, "MedicalDirector", generated_at=GENERATED_AT)
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert list(tmp_path.iterdir()) == []


def test_deliver_best_practice_replaces_unencodable(tmp_path):
    """Other EMRs get '?' for characters Latin-1 cannot hold."""
    record = _record(family="Wang 王")
    outcome = deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)
    assert b"Wang ?" in open(outcome.path, "rb").read()


def test_deliver_silent_writes_nothing(tmp_path):
    """Silent records are acknowledged without a file."""
    record = _record(silent=True)
    outcome = deliver(_message(record), record, tmp_path / "inbox", "BestPractice")
    assert outcome.status is DeliveryStatus.SILENT
    assert outcome.path is None
    assert not (tmp_path / "inbox").exists()


def test_deliver_creates_directory(tmp_path):
    """Missing directories are created recursively."""
    target = tmp_path / "a" / "b" / "inbox"
    record = _record()
    outcome = deliver(_message(record), record, target, "BestPractice", generated_at=GENERATED_AT)
    assert os.path.dirname(outcome.path) == str(target)


def test_deliver_leaves_no_temporary_files(tmp_path):
    """Only the final .hl7 file remains."""
    record = _record()
    deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)
    names = [p.name for p in tmp_path.iterdir()]
    assert len(names) == 1 and names[0].endswith(".hl7")


def test_deliver_same_tick_does_not_overwrite(tmp_path):
    """A second write in the same tick gets its own file."""
    record = _record()
    first = deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)
    second = deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)
    assert first.path != second.path
    assert len(list(tmp_path.iterdir())) == 2



def test_deliver_never_replaces_existing_file(tmp_path):
    """A file already holding the target name keeps its content."""
    record = _record()
    existing = tmp_path / create_filename(record, GENERATED_AT)
    existing.write_text("earlier message", encoding="latin-1")

    outcome = deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)

    assert outcome.path != str(existing)
    assert existing.read_text(encoding="latin-1") == "earlier message"
    assert len(list(tmp_path.iterdir())) == 2


def test_deliver_filesystem_error_raises_write_error(tmp_path):
    """OSError from the filesystem is wrapped with the cause chained."""
    record = _record()
    with patch("delivery.os.link", side_effect=PermissionError("denied")):
        with pytest.raises(WriteError) as excinfo:
            deliver(_message(record), record, tmp_path, "BestPractice", generated_at=GENERATED_AT)
    assert isinstance(excinfo.value.__cause__, PermissionError)
    assert list(tmp_path.iterdir()) == []


def test_deliver_target_is_a_file(tmp_path):
    """A target path that is a file cannot be used as a directory."""
    blocker = tmp_path / "inbox"
    blocker.write_text("not a directory")
    record = _record()
    with pytest.raises(WriteError):
        deliver(_message(record), record, blocker, "BestPractice", generated_at=GENERATED_AT)
