"""
hl7_builder.py
--------------
FHT Message Service — HL7 v2 Message Builder
--------------------------------------------
Translates a ``ResultRecord`` into an HL7 v2.8.1 message that BestPractice
and MedicalDirector can import from their inbox directories.

Two layouts are produced, selected by ``MessageVariant``:

  • ObservationResult  ``ORU^R01``
        MSH  SFT  PID  PV1  OBR  OBX(NM)  OBX(FT)  CTI
  • Referral           ``REF^I12``
        MSH  SFT  RF1  PRD  PID  PV1  OBR  OBX(NM)  NTE  CTI

Both layouts share the same header, software, patient, visit, request and
result helpers; only the segment set and order differ.  Every optional
value that is missing is emitted as an empty field so each segment keeps a
fixed field count.

Determinism: the wall-clock "generated at" instant is a parameter, so the
same record built with the same timestamp serialises byte-for-byte
identically.

Public API:
    MessageVariant            ObservationResult | Referral.
    SoftwareInfo              Vendor / product / release for MSH + SFT.
    Segment / WireMessage     Segment → fields → components; ``serialize()``.
    DoctorName                Parsed attending-doctor name.
    parse_doctor_name()       Free text → DoctorName.
    to_hl7_coding_system()    CodingSystem → HL7 table 0396 code.
    hl7_timestamp()           datetime → ``yyyyMMddHHmmss[.FFFF]``.
    build_message()           ResultRecord → WireMessage.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from errors import InvalidRecord
from schemas import CodingSystem, ResultRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Encoding characters
# ---------------------------------------------------------------------------
FIELD_DELIMITER        = "|"
COMPONENT_DELIMITER    = "^"
REPETITION_DELIMITER   = "~"
ESCAPE_CHARACTER       = "\\"
SUBCOMPONENT_DELIMITER = "&"
SEGMENT_DELIMITER      = "\r\n"
ENCODING_CHARACTERS    = (
    COMPONENT_DELIMITER + REPETITION_DELIMITER + ESCAPE_CHARACTER + SUBCOMPONENT_DELIMITER
)

# Escape character first so later replacements are not re-escaped.
_ESCAPES: Tuple[Tuple[str, str], ...] = (
    (ESCAPE_CHARACTER,       "\\E\\"),
    (FIELD_DELIMITER,        "\\F\\"),
    (COMPONENT_DELIMITER,    "\\S\\"),
    (SUBCOMPONENT_DELIMITER, "\\T\\"),
    (REPETITION_DELIMITER,   "\\R\\"),
    ("\r",                   "\\X0D\\"),
    ("\n",                   "\\X0A\\"),
)

# ---------------------------------------------------------------------------
# Message constants
# ---------------------------------------------------------------------------
SOFTWARE_PRODUCT_NAME = "Future Health Today"
SOFTWARE_ORGANIZATION = "The University of Melbourne"
SOFTWARE_PRODUCT_INFORMATION = "FHTMessageService"

RECEIVING_APPLICATION = "EMR"
MESSAGE_CONTROL_ID    = "0000000"
PROCESSING_ID         = "P"
MESSAGE_VERSION_ID    = "2.8.1"

PATIENT_CLASS_UNKNOWN = "U"
RESULT_STATUS_FINAL   = "F"
VALUE_TYPE_NUMERIC    = "NM"
VALUE_TYPE_FORMATTED  = "FT"
FORMATTED_TEXT_ID     = "DS"
REFERRAL_STATUS_ACCEPTED = "A"
PROVIDER_ROLE_REFERRING  = "RP"
COMMENT_SOURCE_LOCAL     = "L"

DOCTOR_PREFIXES = frozenset({"Dr", "Mr", "Ms", "Mrs", "Mdm"})

# HL7 table 0396; anything unmapped is a local code.
LOCAL_CODING_SYSTEM = "L"
HL7_CODING_SYSTEMS: Dict[CodingSystem, str] = {
    CodingSystem.LOCAL:     LOCAL_CODING_SYSTEM,
    CodingSystem.LOINC:     "LN",
    CodingSystem.SNOMED_CT: "SCT",
    CodingSystem.ICD10:     "I10",
}


class MessageVariant(str, Enum):
    OBSERVATION_RESULT = "ObservationResult"
    REFERRAL           = "Referral"

    @property
    def message_type(self) -> Tuple[str, str]:
        if self is MessageVariant.REFERRAL:
            return ("REF", "I12")
        return ("ORU", "R01")

    @classmethod
    def parse(cls, value: str) -> Optional["MessageVariant"]:
        """Case-insensitive lookup by value or name; ``None`` when unknown."""
        wanted = value.strip().lower().replace("_", "")
        for member in cls:
            if wanted in (member.value.lower(), member.name.lower().replace("_", "")):
                return member
        return None


@dataclass(frozen=True)
class SoftwareInfo:
    """Identity written into MSH / SFT, supplied at startup."""
    version: str = ""
    product_name: str = SOFTWARE_PRODUCT_NAME
    organization: str = SOFTWARE_ORGANIZATION
    product_information: str = SOFTWARE_PRODUCT_INFORMATION


# ---------------------------------------------------------------------------
# Message structure
# ---------------------------------------------------------------------------

Field = Tuple[str, ...]


def escape_value(value: str) -> str:
    """Escape HL7 delimiter characters and line breaks inside one value."""
    for raw, escaped in _ESCAPES:
        if raw in value:
            value = value.replace(raw, escaped)
    return value


@dataclass(frozen=True)
class Segment:
    """One segment: a name plus ordered fields of ordered components."""
    name: str
    fields: Tuple[Field, ...] = ()

    def field(self, position: int) -> Field:
        """Return the field at 1-based HL7 *position* (``PID-3`` → ``field(3)``)."""
        offset = 3 if self.name == "MSH" else 1
        return self.fields[position - offset]

    def serialize(self) -> str:
        rendered = [
            COMPONENT_DELIMITER.join(escape_value(component) for component in f)
            for f in self.fields
        ]
        if self.name == "MSH":
            # MSH-1 is the field separator itself, MSH-2 the encoding characters.
            return FIELD_DELIMITER.join([self.name, ENCODING_CHARACTERS] + rendered)
        return FIELD_DELIMITER.join([self.name] + rendered)


@dataclass
class WireMessage:
    segments: List[Segment] = field(default_factory=list)

    def segment_names(self) -> List[str]:
        return [s.name for s in self.segments]

    def get(self, name: str) -> List[Segment]:
        return [s for s in self.segments if s.name == name]

    def serialize(self) -> str:
        return SEGMENT_DELIMITER.join(s.serialize() for s in self.segments)


class _SegmentBuilder:
    """Append-only helper mirroring how fields are listed in the HL7 tables."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._fields: List[Field] = []

    def add(self, *components: Optional[str]) -> "_SegmentBuilder":
        self._fields.append(tuple(c or "" for c in components) or ("",))
        return self

    def empty(self, count: int = 1) -> "_SegmentBuilder":
        for _ in range(count):
            self._fields.append(("",))
        return self

    def build(self) -> Segment:
        return Segment(self.name, tuple(self._fields))


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

class DoctorName(NamedTuple):
    prefix: str = ""
    given_name: str = ""
    other_names: str = ""
    family_name: str = ""


def parse_doctor_name(name: str) -> DoctorName:
    """
    Split an attending-doctor free-text name into HL7 name components.

    Rules, applied in order over the whitespace-separated tokens:
      1. The first token is the prefix when it starts (case-insensitive) with
         one of ``Dr``, ``Mr``, ``Ms``, ``Mrs``, ``Mdm``.
      2. The next token is the given name.
      3. Every token after that except the last is an other name.
      4. The last remaining token is the family name.

    Short inputs leave later parts empty, so ``"Smith"`` is a given name.

    Example::

        parse_doctor_name("Dr John Robert Smith")
        # DoctorName(prefix='Dr', given_name='John',
        #            other_names='Robert', family_name='Smith')
    """
    tokens = name.split()
    index = 0
    prefix = given_name = other_names = family_name = ""

    if len(tokens) > index:
        first = tokens[index].lower()
        if any(first.startswith(p.lower()) for p in DOCTOR_PREFIXES):
            prefix = tokens[index]
            index += 1

    if len(tokens) > index:
        given_name = tokens[index]
        index += 1

    if len(tokens) - 1 > index:
        other = tokens[index:len(tokens) - 1]
        other_names = " ".join(other)
        index += len(other)

    if len(tokens) > index:
        family_name = tokens[index]

    return DoctorName(prefix, given_name, other_names, family_name)


def to_hl7_coding_system(coding_system: CodingSystem) -> str:
    return HL7_CODING_SYSTEMS.get(coding_system, LOCAL_CODING_SYSTEM)


def hl7_timestamp(value: Optional[datetime]) -> str:
    """
    Format *value* as ``yyyyMMddHHmmss.FFFF``.

    Trailing zero digits of the fraction are dropped, and the dot with them
    when the fraction is zero.  ``None`` formats as ``""``.
    """
    if value is None:
        return ""
    base = (
        f"{value.year:04d}{value.month:02d}{value.day:02d}"
        f"{value.hour:02d}{value.minute:02d}{value.second:02d}"
    )
    fraction = f"{value.microsecond // 100:04d}".rstrip("0")
    return f"{base}.{fraction}" if fraction else base


# ---------------------------------------------------------------------------
# Segment helpers (shared by both variants)
# ---------------------------------------------------------------------------

def _msh(variant: MessageVariant, software: SoftwareInfo, generated: str) -> Segment:
    return (
        _SegmentBuilder("MSH")
        .add(software.product_name)         # Sending application
        .add(software.product_name)         # Sending facility
        .add(RECEIVING_APPLICATION)         # Receiving application
        .empty()                            # Receiving facility
        .add(generated)                     # Date/time of message
        .empty()                            # Security
        .add(*variant.message_type)         # Message type
        .add(MESSAGE_CONTROL_ID)            # Message control ID
        .add(PROCESSING_ID)                 # Processing ID
        .add(MESSAGE_VERSION_ID)            # Version ID
        .build()
    )


def _sft(software: SoftwareInfo) -> Segment:
    return (
        _SegmentBuilder("SFT")
        .add(software.organization)         # Software vendor organization
        .add(software.version)              # Software certified version or release number
        .add(software.product_name)         # Software product name
        .empty()                            # Software binary ID
        .add(software.product_information)  # Software product information
        .empty()                            # Software install date
        .build()
    )


def _pid(record: ResultRecord) -> Segment:
    patient = record.patient
    return (
        _SegmentBuilder("PID")
        .empty()                            # Set ID
        .empty()                            # Patient ID
        .add(patient.patient_id)            # Patient identifier list
        .empty()                            # Alternate patient ID
        .add(patient.patient_family_name, patient.patient_given_name)  # Patient name
        .empty()                            # Mother's maiden name
        .add(hl7_timestamp(patient.patient_dob))  # Date/time of birth
        .add(patient.patient_sex)           # Administrative sex
        .empty()                            # Patient alias
        .empty()                            # Race
        .add(patient.patient_address)       # Patient address
        .build()
    )


def _doctor_components(record: ResultRecord) -> Optional[Tuple[str, ...]]:
    text = record.patient_visit.patient_visit_doctor
    if not text.strip():
        return None
    doctor = parse_doctor_name(text)
    return doctor.family_name, doctor.given_name, doctor.other_names, "", doctor.prefix


def _pv1(record: ResultRecord, software: SoftwareInfo) -> Segment:
    builder = (
        _SegmentBuilder("PV1")
        .empty()                            # Set ID
        .add(PATIENT_CLASS_UNKNOWN)         # Patient class
        .add(software.product_name)         # Assigned patient location
        .empty(3)                           # Admission type, preadmit number, prior location
    )
    doctor = _doctor_components(record)
    if doctor is not None:
        builder.add("", *doctor)            # Attending doctor (ID number first)
    else:
        builder.empty()
    return (
        builder
        .empty()                            # Referring doctor
        .empty()                            # Consulting doctor
        .build()
    )


def _observation_identifier(record: ResultRecord) -> Tuple[str, str, str]:
    observation = record.observation
    return (
        observation.observation_identifier,
        observation.observation_identifier_text,
        to_hl7_coding_system(observation.observation_coding_system),
    )


def _obr(record: ResultRecord, generated: str) -> Segment:
    return (
        _SegmentBuilder("OBR")
        .empty(3)                           # Set ID, placer / filler order numbers
        .add(*_observation_identifier(record))  # Universal service identifier
        .empty(2)                           # Priority, requested date/time
        .add(hl7_timestamp(record.observation.observation_date_time))  # Observation date/time
        .empty(14)                          # Observation end date/time … filler field 2
        .add(generated)                     # Results report / status change date/time
        .empty(2)                           # Charge to practice, diagnostic service section
        .add(RESULT_STATUS_FINAL)           # Result status
        .build()
    )


def _obx_numeric(record: ResultRecord, software: SoftwareInfo, generated: str) -> Segment:
    observation = record.observation
    return (
        _SegmentBuilder("OBX")
        .empty()                            # Set ID
        .add(VALUE_TYPE_NUMERIC)            # Value type
        .add(*_observation_identifier(record))  # Observation identifier
        .empty()                            # Observation sub-ID
        .add(observation.observation_value)  # Observation value
        .add(observation.observation_units)  # Units
        .add(observation.observation_references_range)  # References range
        .add(observation.observation_abnormal_flags)    # Abnormal flags
        .empty(2)                           # Probability, nature of abnormal test
        .add(RESULT_STATUS_FINAL)           # Observation result status
        .empty(2)                           # Effective date of reference range, user defined access checks
        .add(generated)                     # Date/time of the observation
        .empty(2)                           # Producer's ID, responsible observer
        .add(software.product_name)         # Observation method
        .empty()                            # Equipment instance identifier
        .add(generated)                     # Date/time of the analysis
        .build()
    )


def _obx_formatted_text(record: ResultRecord, generated: str) -> Segment:
    return (
        _SegmentBuilder("OBX")
        .empty()                            # Set ID
        .add(VALUE_TYPE_FORMATTED)          # Value type
        .add(FORMATTED_TEXT_ID)             # Observation identifier
        .empty()                            # Observation sub-ID
        .add(record.formatted_text)         # Observation value
        .empty(5)                           # Units … nature of abnormal test
        .add(RESULT_STATUS_FINAL)           # Observation result status
        .empty(2)                           # Effective date of reference range, user defined access checks
        .add(generated)                     # Date/time of the observation
        .build()
    )


def _cti(record: ResultRecord) -> Segment:
    trial = record.clinical_trial
    return (
        _SegmentBuilder("CTI")
        .add(trial.study_identifier)        # Sponsor study ID
        .add(trial.study_phase_identifier, trial.study_phase_identifier_text)  # Study phase identifier
        .build()
    )


def _rf1(record: ResultRecord, generated: str) -> Segment:
    return (
        _SegmentBuilder("RF1")
        .add(REFERRAL_STATUS_ACCEPTED)      # Referral status
        .empty(4)                           # Priority, type, disposition, category
        .add(record.observation.observation_identifier)  # Originating referral identifier
        .add(generated)                     # Effective date
        .build()
    )


def _prd(record: ResultRecord, software: SoftwareInfo) -> Segment:
    builder = _SegmentBuilder("PRD").add(PROVIDER_ROLE_REFERRING)  # Provider role
    doctor = _doctor_components(record)
    if doctor is not None:
        builder.add(*doctor)                # Provider name
    else:
        builder.empty()
    return (
        builder
        .empty()                            # Provider address
        .add(software.product_name)         # Provider location
        .build()
    )


def _nte(record: ResultRecord) -> Segment:
    return (
        _SegmentBuilder("NTE")
        .empty()                            # Set ID
        .add(COMMENT_SOURCE_LOCAL)          # Source of comment
        .add(record.formatted_text)         # Comment
        .build()
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_identity(record: ResultRecord) -> None:
    """
    Raises:
        InvalidRecord: the patient id or observation identifier is blank.
    """
    patient_id, observation_identifier = record.identity
    if not patient_id.strip():
        raise InvalidRecord("Record has no patient id.")
    if not observation_identifier.strip():
        raise InvalidRecord(f"Record for patient {patient_id} has no observation identifier.")


def build_message(
    record: ResultRecord,
    variant: MessageVariant = MessageVariant.OBSERVATION_RESULT,
    *,
    generated_at: Optional[datetime] = None,
    software: Optional[SoftwareInfo] = None,
) -> WireMessage:
    """
    Build the HL7 message for one record.

    Args:
        record:       The result record.
        variant:      Segment layout (see module docstring).
        generated_at: Timestamp written into MSH-7, OBR-22 and the OBX
                      date/time fields.  Defaults to now.
        software:     Vendor / product / release identity.

    Returns:
        WireMessage: ready for ``serialize()``.

    Raises:
        InvalidRecord: the patient id or observation identifier is blank.
    """
    validate_identity(record)
    software = software or SoftwareInfo()
    generated = hl7_timestamp(generated_at or datetime.now())

    segments: Sequence[Segment]
    if variant is MessageVariant.REFERRAL:
        segments = (
            _msh(variant, software, generated),
            _sft(software),
            _rf1(record, generated),
            _prd(record, software),
            _pid(record),
            _pv1(record, software),
            _obr(record, generated),
            _obx_numeric(record, software, generated),
            _nte(record),
            _cti(record),
        )
    else:
        segments = (
            _msh(variant, software, generated),
            _sft(software),
            _pid(record),
            _pv1(record, software),
            _obr(record, generated),
            _obx_numeric(record, software, generated),
            _obx_formatted_text(record, generated),
            _cti(record),
        )

    message = WireMessage(list(segments))
    logger.debug(
        "hl7_builder: built %s message %s for patient %s (%s).",
        variant.value,
        "^".join(variant.message_type),
        record.patient.patient_id,
        record.observation.observation_identifier,
    )
    return message
