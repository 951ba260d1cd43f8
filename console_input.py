"""
console_input.py
----------------
FHT Message Service — Console Record Entry
------------------------------------------
Builds a single ResultRecord from answers typed at the console, for manual
testing of an EMR import directory (``python main.py compose``).

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from errors import InvalidRecord
from schemas import ClinicalTrial, Observation, Patient, PatientVisit, ResultRecord

logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]

_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y%m%d")


def parse_console_date(text: str) -> Optional[datetime]:
    """
    Parse an ISO date/time or a ``dd/mm/yyyy`` date; blank gives ``None``.

    Raises:
        InvalidRecord: the text is not a recognised date.
    """
    value = text.strip()
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise InvalidRecord(f"'{value}' is not a valid date.")


def create_record_from_console(input_fn: InputFn = input, emr: str = "") -> ResultRecord:
    """
    Prompt for patient, observation and doctor details.

    Args:
        input_fn: Prompt function; ``input`` at the console, a stub in tests.
        emr:      EMR kind written to ``patient_emr``.

    Raises:
        InvalidRecord: the date of birth cannot be parsed.
    """
    print("Creating HL7 message from console input")

    patient = Patient(
        patient_id=input_fn("Patient ID: ").strip(),
        patient_family_name=input_fn("Patient family name: ").strip(),
        patient_given_name=input_fn("Patient given name: ").strip(),
        patient_dob=parse_console_date(input_fn("Patient DOB: ")),
        patient_sex=input_fn("Patient sex: ").strip(),
        patient_address=input_fn("Patient address: ").strip(),
        patient_emr=emr,
    )
    observation = Observation(
        observation_identifier=input_fn("Observation identifier: ").strip(),
        observation_identifier_text=input_fn("Observation identifier text: ").strip(),
        observation_value=input_fn("Observation value: ").strip(),
        observation_units=input_fn("Observation units: ").strip(),
        observation_references_range=input_fn("Observation references range: ").strip(),
        observation_abnormal_flags=input_fn("Observation abnormal flags: ").strip(),
        observation_date_time=datetime.now(),
    )
    visit = PatientVisit(patient_visit_doctor=input_fn("Consulting doctor: ").strip())

    record = ResultRecord(
        patient=patient,
        observation=observation,
        patient_visit=visit,
        clinical_trial=ClinicalTrial(),
    )
    logger.debug("console_input: record for patient %s composed.", patient.patient_id)
    return record
