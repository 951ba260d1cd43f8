"""
test_hl7_builder.py
-------------------
FHT Message Service — Test Suite for hl7_builder.py
---------------------------------------------------
Tests cover:
    - ObservationResult and Referral segment order
    - MSH / SFT / PID / PV1 / OBR / OBX / CTI field positions
    - Doctor-name parsing examples and the empty-doctor case
    - Coding-system mapping with local fallback
    - Timestamp format (fraction trimming)
    - HL7 escaping of delimiters and line breaks
    - Determinism for a fixed generated_at
    - InvalidRecord for missing identity

Run:
    pytest tests/test_hl7_builder.py -v --tb=short

Project: FHT Message Service
"""

import pytest
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from errors import InvalidRecord
from hl7_builder import (
    DoctorName,
    MessageVariant,
    SoftwareInfo,
    build_message,
    escape_value,
    hl7_timestamp,
    parse_doctor_name,
    to_hl7_coding_system,
)
from schemas import CodingSystem, ResultRecord


GENERATED_AT = datetime(2024, 3, 5, 14, 30, 15, 123400)
SOFTWARE = SoftwareInfo(version="1.2.3")


def _record(**overrides):
    data = {
        "Patient": {
            "PatientId": "1001",
            "PatientFamilyName": "Citizen",
            "PatientGivenName": "Jane",
            "PatientDob": "1960-04-01T00:00:00",
            "PatientSex": "F",
            "PatientAddress": "1 Main St",
            "PatientEmr": "BestPractice",
        },
        "Observation": {
            "ObservationIdentifier": "FHT-CKD",
            "ObservationIdentifierText": "Chronic kidney disease",
            "ObservationCodingSystem": 2,
            "ObservationValue": "1",
            "ObservationUnits": "mL/min",
            "ObservationReferencesRange": "60-120",
            "ObservationAbnormalFlags": "L",
            "ObservationDateTime": "2024-03-01T09:15:00",
        },
        "PatientVisit": {"PatientVisitDoctor": "Dr John Robert Smith"},
        "ClinicalTrial": {
            "StudyIdentifier": "FHT",
            "StudyPhaseIdentifier": "2",
            "StudyPhaseIdentifierText": "Intervention",
        },
        "FormattedText": "Consider review.",
    }
    for key, value in overrides.items():
        section, _, field = key.partition("__")
        if field:
            data[section][field] = value
        else:
            data[section] = value
    return ResultRecord.model_validate(data)


def _build(record=None, variant=MessageVariant.OBSERVATION_RESULT):
    return build_message(record or _record(), variant, generated_at=GENERATED_AT, software=SOFTWARE)


# ── Segment layout ─────────────────────────────────────────────────────────────

def test_observation_result_segment_order():
    """ORU^R01 carries MSH SFT PID PV1 OBR OBX OBX CTI."""
    message = _build()
    assert message.segment_names() == ["MSH", "SFT", "PID", "PV1", "OBR", "OBX", "OBX", "CTI"]


def test_referral_segment_order():
    """REF^I12 carries MSH SFT RF1 PRD PID PV1 OBR OBX NTE CTI."""
    message = _build(variant=MessageVariant.REFERRAL)
    assert message.segment_names() == [
        "MSH", "SFT", "RF1", "PRD", "PID", "PV1", "OBR", "OBX", "NTE", "CTI",
    ]


def test_msh_line():
    """MSH header with message type, control id, processing id and version."""
    msh = _build().serialize().split("\r\n")[0]
    assert msh == (
        "MSH|^~\\&|Future Health Today|Future Health Today|EMR||20240305143015.1234"
        "||ORU^R01|0000000|P|2.8.1"
    )


def test_referral_message_type():
    """The Referral variant is REF^I12."""
    msh = _build(variant=MessageVariant.REFERRAL).get("MSH")[0]
    assert msh.field(9) == ("REF", "I12")


def test_sft_line():
    """SFT names vendor, release, product and product information."""
    sft = _build().get("SFT")[0].serialize()
    assert sft == "SFT|The University of Melbourne|1.2.3|Future Health Today||FHTMessageService|"


def test_pid_fields():
    """PID-3 id, PID-5 family^given, PID-7 DOB, PID-8 sex, PID-11 address."""
    pid = _build().get("PID")[0]
    assert pid.field(3) == ("1001",)
    assert pid.field(5) == ("Citizen", "Jane")
    assert pid.field(7) == ("19600401000000",)
    assert pid.field(8) == ("F",)
    assert pid.field(11) == ("1 Main St",)
    assert pid.serialize() == "PID|||1001||Citizen^Jane||19600401000000|F|||1 Main St"


def test_pv1_doctor_components():
    """PV1-7 is ^family^given^other^^prefix."""
    pv1 = _build().get("PV1")[0]
    assert pv1.field(2) == ("U",)
    assert pv1.field(3) == ("Future Health Today",)
    assert pv1.serialize() == "PV1||U|Future Health Today||||^Smith^John^Robert^^Dr||"


def test_pv1_without_doctor():
    """No doctor leaves PV1-7 empty."""
    pv1 = _build(_record(PatientVisit={"PatientVisitDoctor": ""})).get("PV1")[0]
    assert pv1.serialize() == "PV1||U|Future Health Today||||||"


def test_obr_fields():
    """OBR-4 coded identifier, OBR-7 observation time, OBR-22 generated, OBR-25 F."""
    obr = _build().get("OBR")[0]
    assert obr.field(4) == ("FHT-CKD", "Chronic kidney disease", "LN")
    assert obr.field(7) == ("20240301091500",)
    assert obr.field(22) == ("20240305143015.1234",)
    assert obr.field(25) == ("F",)
    assert len(obr.fields) == 25


def test_obx_numeric_fields():
    """The numeric OBX carries value, units, range, flags and status."""
    obx = _build().get("OBX")[0]
    assert obx.field(2) == ("NM",)
    assert obx.field(3) == ("FHT-CKD", "Chronic kidney disease", "LN")
    assert obx.field(5) == ("1",)
    assert obx.field(6) == ("mL/min",)
    assert obx.field(7) == ("60-120",)
    assert obx.field(8) == ("L",)
    assert obx.field(11) == ("F",)
    assert obx.field(14) == ("20240305143015.1234",)
    assert obx.field(17) == ("Future Health Today",)
    assert obx.field(19) == ("20240305143015.1234",)


def test_obx_formatted_text_fields():
    """The formatted-text OBX carries FT / DS and the text."""
    obx = _build().get("OBX")[1]
    assert obx.field(2) == ("FT",)
    assert obx.field(3) == ("DS",)
    assert obx.field(5) == ("Consider review.",)
    assert obx.field(11) == ("F",)
    assert obx.field(14) == ("20240305143015.1234",)


def test_cti_line():
    """CTI carries study id and phase id^text."""
    assert _build().get("CTI")[0].serialize() == "CTI|FHT|2^Intervention"


def test_referral_specific_segments():
    """RF1, PRD and NTE carry referral details."""
    message = _build(variant=MessageVariant.REFERRAL)
    assert message.get("RF1")[0].field(1) == ("A",)
    assert message.get("PRD")[0].field(2) == ("Smith", "John", "Robert", "", "Dr")
    assert message.get("NTE")[0].field(3) == ("Consider review.",)


def test_missing_optional_fields_are_empty():
    """A record with only identity fields still builds every segment."""
    record = ResultRecord.model_validate({
        "Patient": {"PatientId": "1"},
        "Observation": {"ObservationIdentifier": "X"},
    })
    message = _build(record)
    assert message.get("PID")[0].serialize() == "PID|||1||^||||||"
    assert message.get("CTI")[0].serialize() == "CTI||^"


# ── Determinism / validation ───────────────────────────────────────────────────

def test_deterministic_for_fixed_timestamp():
    """Same record and generated_at serialise identically."""
    assert _build().serialize() == _build().serialize()


def test_segments_joined_with_crlf():
    """Segments are separated by CR LF."""
    text = _build().serialize()
    assert text.count("\r\n") == 7
    assert not text.endswith("\r\n")


def test_missing_patient_id_raises():
    """A blank patient id is an InvalidRecord."""
    with pytest.raises(InvalidRecord):
        _build(_record(Patient__PatientId="  "))


def test_missing_observation_identifier_raises():
    """A blank observation identifier is an InvalidRecord."""
    with pytest.raises(InvalidRecord):
        _build(_record(Observation__ObservationIdentifier=""))


# ── Doctor names ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize("text, expected", [
    ("Dr John Robert Smith", DoctorName("Dr", "John", "Robert", "Smith")),
    ("John Smith", DoctorName("", "John", "", "Smith")),
    ("Smith", DoctorName("", "Smith", "", "")),
    ("dr. Ann Lee", DoctorName("dr.", "Ann", "", "Lee")),
    ("Mrs Mary Anne Jo Brown", DoctorName("Mrs", "Mary", "Anne Jo", "Brown")),
    ("Dr Smith", DoctorName("Dr", "Smith", "", "")),
    ("", DoctorName()),
])
def test_parse_doctor_name(text, expected):
    """Prefix, given, other and family names are split by position."""
    assert parse_doctor_name(text) == expected


def test_prefix_match_is_startswith():
    """Any token starting with a prefix is treated as one."""
    assert parse_doctor_name("Drew Barry").prefix == "Drew"


# ── Coding systems / timestamps / escaping ─────────────────────────────────────

@pytest.mark.parametrize("system, code", [
    (CodingSystem.LOINC, "LN"),
    (CodingSystem.SNOMED_CT, "SCT"),
    (CodingSystem.ICD10, "I10"),
    (CodingSystem.LOCAL, "L"),
    (CodingSystem.UNSPECIFIED, "L"),
])
def test_coding_system_mapping(system, code):
    """Known systems map to table 0396 codes, others are local."""
    assert to_hl7_coding_system(system) == code


@pytest.mark.parametrize("value, expected", [
    (datetime(2024, 3, 5, 14, 30, 15), "20240305143015"),
    (datetime(2024, 3, 5, 14, 30, 15, 500000), "20240305143015.5"),
    (datetime(2024, 3, 5, 14, 30, 15, 120000), "20240305143015.12"),
    (datetime(2024, 3, 5, 14, 30, 15, 123456), "20240305143015.1234"),
    (datetime(2024, 3, 5, 14, 30, 15, 50), "20240305143015"),
    (None, ""),
])
def test_hl7_timestamp(value, expected):
    """Fraction digits are trimmed, and the dot with them."""
    assert hl7_timestamp(value) == expected


def test_escape_delimiters():
    """Delimiters inside values are escaped, escape character first."""
    assert escape_value("a|b^c&d~e\\f") == "a\\F\\b\\S\\c\\T\\d\\R\\e\\E\\f"


def test_escape_line_breaks():
    """CR and LF inside values become hex escapes."""
    assert escape_value("line1\r\nline2") == "line1\\X0D\\\\X0A\\line2"


def test_formatted_text_escaped_in_message():
    """Free text cannot break the segment structure."""
    message = _build(_record(FormattedText="eGFR | low\nrecheck"))
    assert "eGFR \\F\\ low\\X0A\\recheck" in message.serialize()
    assert message.serialize().count("\r\n") == 7


def test_variant_parse():
    """Variant names parse case-insensitively; unknowns are None."""
    assert MessageVariant.parse("ObservationResult") is MessageVariant.OBSERVATION_RESULT
    assert MessageVariant.parse("REFERRAL") is MessageVariant.REFERRAL
    assert MessageVariant.parse("observation_result") is MessageVariant.OBSERVATION_RESULT
    assert MessageVariant.parse("fax") is None
