"""
Emergency view of a patient's records.

The profile is derived live on every request from the patient's most recent
valid, emergency-accessible records. It is not gated by the authorization
policy: callers reach it either through the emergency-responder role check in
the API layer or by presenting a sealed emergency token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import uuid4

import pydantic
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medrecords.config import settings
from medrecords.errors import ConflictError, ValidationError
from medrecords.models.database import commit, storage_guard
from medrecords.models.record import AuditAction, ClinicalRecord, ConsumedEmergencyToken
from medrecords.schemas.emergency import EmergencyProfile, PatientSummary, RecordProjection
from medrecords.schemas.payload import ClinicalPayload
from medrecords.services import audit
from medrecords.services.audit import RequestOrigin
from medrecords.services.encryption import EncryptionService
from medrecords.services.versioning import newest_first
from medrecords.utils.datetime_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

MAX_PROFILE_RECORDS = 5

token_cipher = EncryptionService()


def _emergency_records(db: Session, patient_id: str, limit: int) -> list[ClinicalRecord]:
    candidates = (
        db.query(ClinicalRecord)
        .filter(
            ClinicalRecord.patient_id == patient_id,
            ClinicalRecord.is_valid.is_(True),
            ClinicalRecord.is_emergency_accessible.is_(True),
        )
        .all()
    )
    return newest_first(candidates)[:limit]


def _project(record: ClinicalRecord) -> RecordProjection:
    payload = ClinicalPayload.from_snapshot(record.payload)
    info = payload.emergency_info
    return RecordProjection(
        record_id=record.id,
        visit_date=payload.visit_date,
        last_updated=as_utc(record.updated_at),
        blood_group=info.blood_group if info else None,
        primary_diagnosis=payload.diagnosis.primary,
        allergies=payload.allergies,
        chronic_conditions=info.chronic_conditions if info else [],
        current_medications=info.current_medications if info else [],
        medical_alerts=info.medical_alerts if info else [],
    )


def _first_by_key(items, key):
    seen, merged = set(), []
    for item in items:
        k = key(item)
        if k not in seen:
            seen.add(k)
            merged.append(item)
    return merged


def _summarize(patient_id: str, projections: list[RecordProjection]) -> PatientSummary:
    # projections are newest first, so the first occurrence of anything wins
    return PatientSummary(
        patient_id=patient_id,
        blood_group=next((p.blood_group for p in projections if p.blood_group), None),
        allergies=_first_by_key(
            (a for p in projections for a in p.allergies), lambda a: a.allergen.strip().lower()
        ),
        chronic_conditions=_first_by_key(
            (c for p in projections for c in p.chronic_conditions),
            lambda c: c.condition.strip().lower(),
        ),
        current_medications=_first_by_key(
            (m for p in projections for m in p.current_medications), lambda m: m.name.strip().lower()
        ),
        medical_alerts=_first_by_key(
            (a for p in projections for a in p.medical_alerts), lambda a: (a.type, a.description)
        ),
        primary_diagnoses=_first_by_key((p.primary_diagnosis for p in projections), lambda d: d),
    )


def derive_emergency_profile(
    db: Session,
    patient_id: str,
    now: datetime | None = None,
    limit: int | None = None,
    *,
    performed_by: str | None = None,
    origin: RequestOrigin | None = None,
    via: str = "Emergency profile accessed",
) -> EmergencyProfile:
    """
    Build the emergency profile for ``patient_id`` and audit the access.

    Every included record gets an ``emergency_accessed`` entry;
    ``performed_by`` is None for anonymous, token-based lookups.
    """
    limit = settings.EMERGENCY_PROFILE_LIMIT if limit is None else limit
    if not 1 <= limit <= MAX_PROFILE_RECORDS:
        raise ValidationError(f"limit must be between 1 and {MAX_PROFILE_RECORDS}")
    now = now or utc_now()

    records = _emergency_records(db, patient_id, limit)
    projections = [_project(record) for record in records]

    for record in records:
        audit.append(
            db,
            record_id=record.id,
            action=AuditAction.EMERGENCY_ACCESSED,
            performed_by=performed_by,
            details=via,
            origin=origin,
            now=now,
        )
    if records:
        commit(db, "emergency access")
        logger.warning(
            "Emergency access to patient %s by %s (%d records)",
            patient_id,
            performed_by or "anonymous token holder",
            len(records),
        )

    return EmergencyProfile(
        patient=_summarize(patient_id, projections),
        records=projections,
        generated_at=now,
        expires_at=now + timedelta(seconds=settings.EMERGENCY_TOKEN_TTL_SECONDS),
    )


def issue_emergency_token(profile: EmergencyProfile, cipher: EncryptionService | None = None) -> str:
    """Seal a profile into an opaque, single-use token suitable for a QR code."""
    cipher = cipher or token_cipher
    return cipher.seal({"jti": str(uuid4()), "profile": profile.model_dump(mode="json")})


def _consume(db: Session, token_id: str, patient_id: str, consumed_by: str | None, now: datetime) -> None:
    if db.get(ConsumedEmergencyToken, token_id) is not None:
        logger.warning("Replayed emergency token %s for patient %s", token_id, patient_id)
        raise ConflictError("Emergency token has already been used")
    with storage_guard(db, "consume emergency token"):
        db.add(
            ConsumedEmergencyToken(
                token_id=token_id, patient_id=patient_id, consumed_by=consumed_by, consumed_at=now
            )
        )
        db.flush()


def resolve_emergency_token(
    db: Session,
    token: str,
    now: datetime | None = None,
    *,
    performed_by: str | None = None,
    origin: RequestOrigin | None = None,
    cipher: EncryptionService | None = None,
) -> EmergencyProfile:
    """
    Redeem a scanned token and return a freshly derived profile.

    Only the token id, the patient id and the advisory expiry are read from
    the token; the clinical content it carries is ignored in favour of a live
    derivation. A token can be redeemed once: a second scan raises
    ConflictError.
    """
    cipher = cipher or token_cipher
    now = now or utc_now()
    claims = cipher.unseal(token)
    token_id = claims.get("jti")
    if not isinstance(token_id, str) or not token_id:
        raise ValidationError("Emergency token has no token id")
    try:
        sealed = EmergencyProfile.model_validate(claims.get("profile"))
    except pydantic.ValidationError:
        raise ValidationError("Emergency token does not carry a profile") from None

    if as_utc(sealed.expires_at) <= as_utc(now):
        raise ValidationError("Emergency token has expired")

    patient_id = sealed.patient.patient_id
    try:
        _consume(db, token_id, patient_id, performed_by, now)
        profile = derive_emergency_profile(
            db,
            patient_id,
            now,
            performed_by=performed_by,
            origin=origin,
            via="Emergency token scanned",
        )
        commit(db, "consume emergency token")
    except IntegrityError:
        # a concurrent scan of the same token committed first
        raise ConflictError("Emergency token has already been used") from None
    return profile
