"""Reduced, emergency-only projection of a patient's records."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from medrecords.schemas.payload import (
    Allergy,
    BloodGroup,
    ChronicCondition,
    CurrentMedication,
    MedicalAlert,
)


class RecordProjection(BaseModel):
    """What a responder may see from one record; never the full payload."""

    record_id: UUID
    visit_date: datetime | None = None
    last_updated: datetime
    blood_group: BloodGroup | None = None
    primary_diagnosis: str
    allergies: list[Allergy] = []
    chronic_conditions: list[ChronicCondition] = []
    current_medications: list[CurrentMedication] = []
    medical_alerts: list[MedicalAlert] = []


class PatientSummary(BaseModel):
    """Merged view across the selected records, newest information first."""

    patient_id: str
    blood_group: BloodGroup | None = None
    allergies: list[Allergy] = []
    chronic_conditions: list[ChronicCondition] = []
    current_medications: list[CurrentMedication] = []
    medical_alerts: list[MedicalAlert] = []
    primary_diagnoses: list[str] = []


class EmergencyProfile(BaseModel):
    """
    Output of an emergency derivation.

    ``expires_at`` is advisory: it tells an offline consumer when to stop
    trusting a serialized copy. The server never relies on it and always
    derives a fresh profile.
    """

    patient: PatientSummary
    records: list[RecordProjection] = []
    generated_at: datetime
    expires_at: datetime
