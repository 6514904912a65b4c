"""
FastAPI routes – a thin layer over the record engine.

Identity arrives already authenticated in the ``X-Caller-Id`` and
``X-Caller-Role`` headers. Every record operation goes through
``authorize`` before touching the engine; engine errors are turned into
HTTP responses by the handlers registered in ``medrecords.main``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from medrecords.config import settings
from medrecords.errors import AuthorizationError, NotFoundError
from medrecords.models.database import get_db
from medrecords.models.record import AccessLevel, AuditAction
from medrecords.schemas.api import (
    AuditEntryResponse,
    EmergencyTokenResponse,
    GrantRequest,
    GrantResponse,
    HealthResponse,
    InvalidateRequest,
    RecordCreate,
    RecordResponse,
    RecordUpdate,
    RevokeResponse,
    ScanRequest,
    VersionHistoryResponse,
    VersionResponse,
    VersionSummary,
)
from medrecords.schemas.emergency import EmergencyProfile
from medrecords.services import access, audit, emergency, versioning
from medrecords.services.audit import RequestOrigin
from medrecords.services.authorization import Caller, Operation, Role, authorize
from medrecords.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()

_EMERGENCY_ROLES = {Role.EMERGENCY_PERSONNEL, Role.ADMIN}


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

def _caller_from_headers(caller_id: str | None, role: str | None) -> Caller | None:
    if not caller_id and not role:
        return None
    if not caller_id or not role:
        raise HTTPException(status_code=401, detail="Both X-Caller-Id and X-Caller-Role are required")
    try:
        return Caller(caller_id=caller_id, role=Role(role))
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {role}") from None


def get_caller(
    x_caller_id: str | None = Header(default=None),
    x_caller_role: str | None = Header(default=None),
) -> Caller:
    caller = _caller_from_headers(x_caller_id, x_caller_role)
    if caller is None:
        raise HTTPException(status_code=401, detail="Caller identity required")
    return caller


def get_optional_caller(
    x_caller_id: str | None = Header(default=None),
    x_caller_role: str | None = Header(default=None),
) -> Caller | None:
    return _caller_from_headers(x_caller_id, x_caller_role)


def get_origin(request: Request) -> RequestOrigin:
    return RequestOrigin(
        address=request.client.host if request.client else None,
        agent=request.headers.get("user-agent"),
    )


def _require_role(caller: Caller, roles: set[Role], action: str) -> None:
    if caller.role not in roles:
        raise AuthorizationError(f"Role {caller.role.value} is not allowed to {action}")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except DBAPIError:
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@router.post("/records", response_model=RecordResponse, status_code=201)
def create_record(
    body: RecordCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """Create a clinical record. Only clinicians author records."""
    _require_role(caller, {Role.DOCTOR}, "create medical records")
    return versioning.create_record(
        db,
        body.payload,
        author_id=caller.caller_id,
        patient_id=body.patient_id,
        status=body.status,
        is_emergency_accessible=body.is_emergency_accessible,
        origin=origin,
    )


@router.get("/records/{record_id}", response_model=RecordResponse)
def get_record(
    record_id: UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    record = versioning.get_record(db, record_id)
    authorize(db, caller, Operation.READ, record)
    versioning.mark_viewed(db, record, caller.caller_id, origin=origin)
    return record


@router.put("/records/{record_id}", response_model=RecordResponse)
def update_record(
    record_id: UUID,
    body: RecordUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """Versioned update; send ``expected_version`` to detect concurrent edits."""
    record = versioning.get_record(db, record_id)
    authorize(db, caller, Operation.WRITE, record)
    return versioning.update_record(
        db,
        record_id,
        body.payload,
        caller.caller_id,
        body.change_reason,
        expected_version=body.expected_version,
        status=body.status,
        is_emergency_accessible=body.is_emergency_accessible,
        origin=origin,
    )


@router.post("/records/{record_id}/invalidate", response_model=RecordResponse)
def invalidate_record(
    record_id: UUID,
    body: InvalidateRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    record = versioning.get_record(db, record_id)
    authorize(db, caller, Operation.INVALIDATE, record)
    return versioning.invalidate(db, record_id, body.reason, caller.caller_id, origin=origin)


@router.get("/records/{record_id}/versions", response_model=VersionHistoryResponse)
def list_versions(
    record_id: UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    record = versioning.get_record(db, record_id, include_invalid=True)
    authorize(db, caller, Operation.READ, record)
    versions = versioning.list_versions(db, record_id)
    versioning.mark_viewed(
        db, record, caller.caller_id, details="Version history accessed", origin=origin
    )
    return VersionHistoryResponse(
        current_version=versions[-1].version_number,
        versions=[VersionSummary.model_validate(v) for v in versions],
    )


@router.get("/records/{record_id}/versions/{version_number}", response_model=VersionResponse)
def get_version(
    record_id: UUID,
    version_number: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    record = versioning.get_record(db, record_id, include_invalid=True)
    authorize(db, caller, Operation.READ, record)
    view = versioning.get_version(db, record_id, version_number)
    versioning.mark_viewed(
        db, record, caller.caller_id, details=f"Version {version_number} accessed", origin=origin
    )
    return view


@router.get("/patients/{patient_id}/records", response_model=list[RecordResponse])
def patient_timeline(
    patient_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """
    Active records of a patient that the caller may read, newest visit first.

    ``limit`` and ``offset`` page through the readable records only.
    """
    now = utc_now()
    readable = []
    for record in versioning.list_active_records(db, patient_id=patient_id):
        try:
            authorize(db, caller, Operation.READ, record, now)
        except AuthorizationError:
            continue
        readable.append(record)
    visible = readable[offset : offset + limit]
    for record in visible:
        versioning.mark_viewed(db, record, caller.caller_id, details="Timeline accessed", origin=origin)
    return visible


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

@router.post("/records/{record_id}/grants", response_model=GrantResponse, status_code=201)
def share_record(
    record_id: UUID,
    body: GrantRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    return access.grant(
        db,
        record_id,
        body.grantee_id,
        body.level,
        caller,
        purpose=body.purpose or "",
        expires_at=body.expires_at,
        origin=origin,
    )


@router.get("/records/{record_id}/grants", response_model=list[GrantResponse])
def list_grants(
    record_id: UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    record = versioning.get_record(db, record_id)
    authorize(db, caller, Operation.SHARE, record)
    return access.list_grants(db, record_id)


@router.delete("/records/{record_id}/grants/{grantee_id}", response_model=RevokeResponse)
def revoke_grant(
    record_id: UUID,
    grantee_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    revoked = access.revoke(db, record_id, grantee_id, caller, origin=origin)
    return RevokeResponse(record_id=record_id, grantee_id=grantee_id, revoked=revoked)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@router.get("/records/{record_id}/audit", response_model=list[AuditEntryResponse])
def record_audit(
    record_id: UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Audit trail of one record, in append order. Needs full access."""
    record = versioning.get_record(db, record_id, include_invalid=True)
    level = authorize(db, caller, Operation.READ, record)
    if level != AccessLevel.FULL:
        raise AuthorizationError("Full access is required to read the audit trail")
    return audit.list_for_record(db, record_id)


@router.get("/audit/users/{user_id}", response_model=list[AuditEntryResponse])
def user_activity(
    user_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    if caller.role != Role.ADMIN and caller.caller_id != user_id:
        raise AuthorizationError("Access denied to user activity logs")
    return audit.list_for_user(db, user_id)


@router.get("/audit/patients/{patient_id}", response_model=list[AuditEntryResponse])
def patient_access_log(
    patient_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Who touched a patient's records. The patient and admins only."""
    if caller.role != Role.ADMIN and caller.caller_id != patient_id:
        raise AuthorizationError("Access denied to patient access logs")
    return audit.list_for_patient(db, patient_id)


@router.get("/audit/system", response_model=list[AuditEntryResponse])
def system_audit(
    action: AuditAction | None = None,
    performed_by: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    _require_role(caller, {Role.ADMIN}, "read system audit logs")
    return audit.list_system(
        db,
        action=action,
        performed_by=performed_by,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Emergency access
# ---------------------------------------------------------------------------

def _non_empty(profile: EmergencyProfile) -> EmergencyProfile:
    if not profile.records:
        raise NotFoundError("No emergency medical information found for this patient")
    return profile


@router.get("/emergency/{patient_id}", response_model=EmergencyProfile)
def emergency_profile(
    patient_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """Emergency responders get the reduced profile without a grant."""
    _require_role(caller, _EMERGENCY_ROLES, "use emergency access")
    profile = emergency.derive_emergency_profile(
        db, patient_id, performed_by=caller.caller_id, origin=origin
    )
    return _non_empty(profile)


@router.post("/emergency/{patient_id}/token", response_model=EmergencyTokenResponse)
def emergency_token(
    patient_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """Issue a sealed emergency token (for a QR code) for a patient."""
    if caller.role == Role.PATIENT and caller.caller_id != patient_id:
        raise AuthorizationError("Patients may only issue tokens for themselves")
    _require_role(caller, {Role.PATIENT, Role.DOCTOR, Role.ADMIN}, "issue emergency tokens")
    profile = _non_empty(
        emergency.derive_emergency_profile(
            db,
            patient_id,
            performed_by=caller.caller_id,
            origin=origin,
            via="Emergency token issued",
        )
    )
    logger.info("Emergency token issued for patient %s by %s", patient_id, caller.caller_id)
    return EmergencyTokenResponse(token=emergency.issue_emergency_token(profile), profile=profile)


@router.post("/emergency/scan", response_model=EmergencyProfile)
def scan_emergency_token(
    body: ScanRequest,
    db: Session = Depends(get_db),
    caller: Caller | None = Depends(get_optional_caller),
    origin: RequestOrigin = Depends(get_origin),
):
    """
    Resolve a scanned token. Anonymous scans are allowed and audited
    without a performer; identified callers must be emergency responders.
    """
    if caller is not None:
        _require_role(caller, _EMERGENCY_ROLES, "scan emergency tokens")
    profile = emergency.resolve_emergency_token(
        db,
        body.token,
        performed_by=caller.caller_id if caller else None,
        origin=origin,
    )
    return _non_empty(profile)
