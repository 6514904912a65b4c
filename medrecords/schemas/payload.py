"""
Typed clinical payload.

The versioning engine only needs ``snapshot()`` from a payload; everything
else here describes what a clinical encounter contains.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

VisitType = Literal[
    "consultation", "emergency", "surgery", "follow_up", "diagnostic", "vaccination", "checkup"
]
BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]


# ---------------------------------------------------------------------------
# Encounter context
# ---------------------------------------------------------------------------

class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = None


class Hospital(BaseModel):
    name: str = Field(..., min_length=1)
    registration_number: str = Field(..., min_length=1)
    address: Address | None = None


# ---------------------------------------------------------------------------
# Vitals
# ---------------------------------------------------------------------------

class Measurement(BaseModel):
    value: float
    unit: str | None = None


class BloodPressure(BaseModel):
    systolic: int
    diastolic: int
    unit: str = "mmHg"


class VitalSigns(BaseModel):
    temperature: Measurement | None = None
    blood_pressure: BloodPressure | None = None
    heart_rate: Measurement | None = None
    respiratory_rate: Measurement | None = None
    oxygen_saturation: Measurement | None = None
    weight: Measurement | None = None
    height: Measurement | None = None
    bmi: float | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _derive_bmi(self) -> VitalSigns:
        if self.weight and self.height and self.height.value > 0:
            weight_kg = self.weight.value * 0.453592 if self.weight.unit == "lbs" else self.weight.value
            height_m = (
                self.height.value * 0.0254 if self.height.unit == "inches" else self.height.value / 100
            )
            self.bmi = round(weight_kg / (height_m * height_m), 2)
        return self


# ---------------------------------------------------------------------------
# Diagnosis & treatment
# ---------------------------------------------------------------------------

class IcdCode(BaseModel):
    code: str
    description: str | None = None


class Diagnosis(BaseModel):
    primary: str = Field(..., min_length=1)
    secondary: list[str] = []
    icd_codes: list[IcdCode] = []


class Medication(BaseModel):
    name: str
    dosage: str
    frequency: str
    duration: str
    instructions: str | None = None
    start_date: date | None = None
    end_date: date | None = None


class Procedure(BaseModel):
    name: str
    description: str | None = None
    performed_on: date | None = None
    outcome: str | None = None
    complications: str | None = None


class Treatment(BaseModel):
    medications: list[Medication] = []
    procedures: list[Procedure] = []
    recommendations: list[str] = []
    follow_up_instructions: str | None = None


class LabValue(BaseModel):
    parameter: str
    value: str
    unit: str | None = None
    reference_range: str | None = None
    status: Literal["normal", "abnormal", "critical"] = "normal"


class LabResult(BaseModel):
    test_name: str
    test_date: date
    results: list[LabValue] = []
    interpretation: str | None = None


# ---------------------------------------------------------------------------
# Emergency-relevant sections
# ---------------------------------------------------------------------------

class Allergy(BaseModel):
    allergen: str
    reaction: str
    severity: Literal["mild", "moderate", "severe", "life_threatening"]


class ChronicCondition(BaseModel):
    condition: str
    diagnosed_date: date | None = None
    status: Literal["active", "resolved", "managed"] = "active"


class CurrentMedication(BaseModel):
    name: str
    dosage: str | None = None
    frequency: str | None = None


class MedicalAlert(BaseModel):
    type: str
    description: str
    severity: Literal["low", "medium", "high", "critical"] = "medium"


class EmergencyInfo(BaseModel):
    blood_group: BloodGroup | None = None
    chronic_conditions: list[ChronicCondition] = []
    current_medications: list[CurrentMedication] = []
    medical_alerts: list[MedicalAlert] = []


class Attachment(BaseModel):
    """Metadata only – the bytes live in external file storage."""

    file_name: str
    original_name: str | None = None
    file_type: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    category: Literal["prescription", "lab_report", "imaging", "discharge_summary", "other"] = "other"
    description: str | None = None


# ---------------------------------------------------------------------------
# The payload
# ---------------------------------------------------------------------------

class ClinicalPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    visit_type: VisitType
    visit_date: datetime | None = None
    chief_complaint: str = Field(..., min_length=1, max_length=500)
    history_of_present_illness: str | None = Field(default=None, max_length=2000)
    hospital: Hospital
    vital_signs: VitalSigns | None = None
    diagnosis: Diagnosis
    treatment: Treatment | None = None
    lab_results: list[LabResult] = []
    allergies: list[Allergy] = []
    emergency_info: EmergencyInfo | None = None
    attachments: list[Attachment] = []
    tags: list[str] = []
    notes: str | None = None

    def snapshot(self) -> dict[str, Any]:
        """Full, JSON-ready copy of the payload."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_snapshot(cls, document: dict[str, Any]) -> ClinicalPayload:
        return cls.model_validate(document)
