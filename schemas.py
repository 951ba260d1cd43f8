"""
schemas.py
----------
FHT Message Service — Pydantic Data Contracts
---------------------------------------------
Pydantic v2 models shared by both ingestion front ends, the message builder
and the delivery writer.

Key-casing policy
-----------------
The local API serialises records in camelCase (``patientId``) while stream
clients send the .NET default PascalCase (``PatientId``).  Every wire model
lower-cases the first letter of incoming keys before validation, so both
spellings land on the same snake_case attribute.  Python callers may use the
attribute names directly (``populate_by_name``).

Leniency policy
---------------
Text fields coerce ``None`` to ``""`` and numbers to strings so a record is
never rejected at parse time for a missing or numeric optional value.  The
only hard identity requirement (patient id + observation identifier) is
enforced later by ``hl7_builder.build_message()`` so one bad record cannot
reject a whole batch.

Public API
----------
    CodingSystem        Observation coding system enumeration.
    ResultRecord        Immutable unit of work (patient, observation, …).
    LoginInfo / UserInfo / ConfigRequestInfo / RemoteConfig
                        Remote API payloads.
    EmrKind             EMR products with a directory lookup.
    DeliveryStatus / DeliveryOutcome / BatchSummary
                        Per-record results and per-batch tallies.
    parse_records()     Validate a decoded JSON array into ResultRecords.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _coerce_text(value: Any) -> str:
    """Coerce ``None`` to ``""`` and scalars to ``str``; leave strings alone."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _none_to_empty(value: Any) -> Any:
    """Treat an explicit JSON ``null`` sub-object as an empty one."""
    return {} if value is None else value


def _lower_first(key: Any) -> Any:
    if isinstance(key, str) and key:
        return key[0].lower() + key[1:]
    return key


Text = Annotated[str, BeforeValidator(_coerce_text)]


class WireModel(BaseModel):
    """Base for models exchanged with the APIs and stream clients."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _normalise_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {_lower_first(k): v for k, v in data.items()}
        return data


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

class CodingSystem(IntEnum):
    """Coding system of an observation identifier, as numbered by the API."""
    UNSPECIFIED = 0
    LOCAL       = 1
    LOINC       = 2
    SNOMED_CT   = 3
    ICD10       = 4

    @classmethod
    def _missing_(cls, value: object) -> "CodingSystem":
        # Names ("Loinc", "SNOMED_CT") and unknown numbers both resolve here.
        if isinstance(value, str):
            normalised = value.strip().upper().replace("-", "_").replace(" ", "_")
            if normalised.isdigit():
                return cls(int(normalised))
            for member in cls:
                if member.name.replace("_", "") == normalised.replace("_", ""):
                    return member
        logger.debug("schemas: unknown coding system %r, treating as unspecified.", value)
        return cls.UNSPECIFIED


class Patient(WireModel):
    patient_id:          Text = ""
    patient_family_name: Text = ""
    patient_given_name:  Text = ""
    patient_dob:         Optional[datetime] = None
    patient_sex:         Text = ""
    patient_address:     Text = ""
    patient_emr:         Text = ""


class Observation(WireModel):
    observation_identifier:      Text = ""
    observation_identifier_text: Text = ""
    observation_coding_system:   Annotated[CodingSystem, BeforeValidator(CodingSystem)] = CodingSystem.UNSPECIFIED
    observation_value:           Text = ""
    observation_units:           Text = ""
    observation_references_range: Text = ""
    observation_abnormal_flags:  Text = ""
    observation_date_time:       Optional[datetime] = None


class PatientVisit(WireModel):
    patient_visit_doctor: Text = ""


class ClinicalTrial(WireModel):
    study_identifier:            Text = ""
    study_phase_identifier:      Text = ""
    study_phase_identifier_text: Text = ""


class ResultRecord(WireModel):
    """
    One unit of clinical result data to be delivered to an EMR.

    Fields
    ------
    patient:        Demographics plus ``patient_emr`` (the target EMR kind).
    observation:    The coded result value and its metadata.
    patient_visit:  Attending doctor as one free-text name.
    clinical_trial: Study / phase identifiers for the CTI segment.
    formatted_text: Free text carried in the formatted-text segment.
    is_silent:      Count the record but do not write a file.
    """

    patient:        Annotated[Patient, BeforeValidator(_none_to_empty)] = Field(default_factory=Patient)
    observation:    Annotated[Observation, BeforeValidator(_none_to_empty)] = Field(default_factory=Observation)
    patient_visit:  Annotated[PatientVisit, BeforeValidator(_none_to_empty)] = Field(default_factory=PatientVisit)
    clinical_trial: Annotated[ClinicalTrial, BeforeValidator(_none_to_empty)] = Field(default_factory=ClinicalTrial)
    formatted_text: Text = ""
    is_silent:      bool = False

    @property
    def identity(self) -> Tuple[str, str]:
        """``(patient_id, observation_identifier)`` used for logging and outcomes."""
        return (self.patient.patient_id, self.observation.observation_identifier)

    @property
    def emr_kind(self) -> str:
        return self.patient.patient_emr


_RECORD_LIST = TypeAdapter(List[ResultRecord])


def parse_records(data: Any) -> List[ResultRecord]:
    """
    Validate a decoded JSON value as a list of ResultRecords.

    ``None`` (an empty API response body) yields an empty list.

    Raises:
        pydantic.ValidationError: if *data* is not an array of objects or a
            field cannot be coerced (e.g. an unparseable date).
    """
    if data is None:
        return []
    return _RECORD_LIST.validate_python(data)


# ---------------------------------------------------------------------------
# Remote API payloads
# ---------------------------------------------------------------------------

class LoginInfo(WireModel):
    """Body of ``POST login``."""
    user_name: Text = ""
    password:  Text = ""


class UserInfo(WireModel):
    """Response of ``POST login``."""
    user_name:  Text = ""
    token:      Text = ""
    account_id: int = 0


class ConfigRequestInfo(WireModel):
    """Body of ``POST SystemConfig``; ids are sent as strings."""
    configuration_account_id:  Text
    configuration_software_id: Text


class RemoteConfig(WireModel):
    """
    Per-account configuration served by the remote API.

    Every field is optional; ``None`` or ``""`` means "not configured
    remotely" and lets the local value through (see config_resolver).
    """
    service_delay_milliseconds:        Optional[int] = None
    message_output_dir:                Optional[str] = None
    bp_database_connection_string:     Optional[str] = None
    md_database_hcn_connection_string: Optional[str] = None
    fht_web_api_endpoint:              Optional[str] = None
    message_variant:                   Optional[str] = None


# ---------------------------------------------------------------------------
# Delivery accounting
# ---------------------------------------------------------------------------

class EmrKind(str, Enum):
    """EMR products with a known import directory lookup."""
    BEST_PRACTICE    = "BestPractice"
    MEDICAL_DIRECTOR = "MedicalDirector"

    @classmethod
    def parse(cls, value: str) -> Optional["EmrKind"]:
        for member in cls:
            if member.value == value:
                return member
        return None


class DeliveryStatus(str, Enum):
    WRITTEN = "written"
    SILENT  = "silent"
    FAILED  = "failed"


class DeliveryOutcome(BaseModel):
    """Result of delivering one record."""
    model_config = ConfigDict(frozen=True)

    patient_id:             str
    observation_identifier: str
    status:                 DeliveryStatus
    reason:                 str = ""
    path:                   Optional[str] = None

    @classmethod
    def for_record(
        cls,
        record: ResultRecord,
        status: DeliveryStatus,
        *,
        reason: str = "",
        path: Optional[str] = None,
    ) -> "DeliveryOutcome":
        patient_id, observation_identifier = record.identity
        return cls(
            patient_id=patient_id,
            observation_identifier=observation_identifier,
            status=status,
            reason=reason,
            path=path,
        )


def _plural(count: int) -> str:
    return "message" if count == 1 else "messages"


class BatchSummary(BaseModel):
    """
    Written / silent / failed tallies for one batch.

    Attributes:
        written:  Records written to disk.
        silent:   Records acknowledged without a file.
        failed:   Records that could not be built or written.
        outcomes: Per-record outcomes in input order.
    """
    model_config = ConfigDict(frozen=True)

    written:  int = 0
    silent:   int = 0
    failed:   int = 0
    outcomes: List[DeliveryOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[DeliveryOutcome]) -> "BatchSummary":
        counts: Dict[DeliveryStatus, int] = {status: 0 for status in DeliveryStatus}
        for outcome in outcomes:
            counts[outcome.status] += 1
        return cls(
            written=counts[DeliveryStatus.WRITTEN],
            silent=counts[DeliveryStatus.SILENT],
            failed=counts[DeliveryStatus.FAILED],
            outcomes=list(outcomes),
        )

    @property
    def total(self) -> int:
        return self.written + self.silent + self.failed

    def describe(self) -> str:
        """One-line summary, e.g. ``"Wrote 4 messages, 0 silent, 1 failed"``."""
        return (
            f"Wrote {self.written} {_plural(self.written)}, "
            f"{self.silent} silent, {self.failed} failed"
        )
