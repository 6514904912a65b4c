"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from medrecords.models.record import AccessLevel, AuditAction, RecordStatus
from medrecords.schemas.emergency import EmergencyProfile
from medrecords.schemas.payload import ClinicalPayload


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class RecordCreate(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    payload: ClinicalPayload
    status: Literal["draft", "completed"] = "draft"
    is_emergency_accessible: bool = False


class RecordUpdate(BaseModel):
    payload: ClinicalPayload
    change_reason: str | None = Field(default=None, max_length=500)
    expected_version: int | None = Field(default=None, ge=1)
    status: RecordStatus | None = None
    is_emergency_accessible: bool | None = None


class InvalidateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: str
    author_id: str
    payload: dict[str, Any]
    version: int
    status: RecordStatus
    is_emergency_accessible: bool
    is_valid: bool
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    invalidation_reason: str | None = None
    invalidated_by: str | None = None
    invalidated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

class VersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: UUID
    version_number: int
    payload: dict[str, Any]
    status: RecordStatus
    is_emergency_accessible: bool
    is_current: bool
    modified_by: str | None
    modified_at: datetime | None
    change_reason: str | None


class VersionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version_number: int
    is_current: bool
    modified_by: str | None
    modified_at: datetime | None
    change_reason: str | None


class VersionHistoryResponse(BaseModel):
    current_version: int
    versions: list[VersionSummary]


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

class GrantRequest(BaseModel):
    grantee_id: str = Field(..., min_length=1, max_length=64)
    level: AccessLevel = AccessLevel.READ
    purpose: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None


class GrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: UUID
    grantee_id: str
    level: AccessLevel
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None
    purpose: str


class RevokeResponse(BaseModel):
    record_id: UUID
    grantee_id: str
    revoked: bool


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: UUID
    action: AuditAction
    performed_by: str | None
    timestamp: datetime
    details: str
    patient_id: str | None = None
    origin_address: str | None = None
    origin_agent: str | None = None


# ---------------------------------------------------------------------------
# Emergency
# ---------------------------------------------------------------------------

class EmergencyTokenResponse(BaseModel):
    token: str
    profile: EmergencyProfile
    instructions: str = (
        "This code contains emergency medical information. "
        "Show it to emergency personnel when needed."
    )


class ScanRequest(BaseModel):
    token: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
