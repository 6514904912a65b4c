"""
Access grants: leveled, optionally expiring permissions on a single record.

There is at most one grant per (record, grantee); granting again replaces it.
Expiry is evaluated lazily at check time, nothing sweeps expired rows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medrecords.errors import ConflictError, ValidationError
from medrecords.models.database import commit, storage_guard
from medrecords.models.record import AccessGrant, AccessLevel, AuditAction
from medrecords.services import audit
from medrecords.services.audit import RequestOrigin
from medrecords.services.authorization import Caller, Operation, authorize
from medrecords.services.versioning import get_record, hold_record
from medrecords.utils.datetime_utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def _level(value: AccessLevel | str) -> AccessLevel:
    try:
        return AccessLevel(value)
    except ValueError:
        raise ValidationError(f"Unknown access level: {value!r}") from None


def get_grant(db: Session, record_id: UUID, grantee_id: str) -> AccessGrant | None:
    """The stored grant for the pair, active or not."""
    return (
        db.query(AccessGrant)
        .filter(AccessGrant.record_id == record_id, AccessGrant.grantee_id == grantee_id)
        .one_or_none()
    )


def has_access(
    db: Session,
    record_id: UUID,
    grantee_id: str,
    required_level: AccessLevel | str,
    now: datetime,
) -> bool:
    """
    True iff an unexpired grant with ``level >= required_level`` exists.

    Side-effect free: callers decide whether the access is itself auditable.
    """
    grant = get_grant(db, record_id, grantee_id)
    return grant is not None and grant.permits(_level(required_level), now)


def list_grants(
    db: Session, record_id: UUID, now: datetime | None = None, *, include_expired: bool = False
) -> list[AccessGrant]:
    now = now or utc_now()
    grants = (
        db.query(AccessGrant)
        .filter(AccessGrant.record_id == record_id)
        .order_by(AccessGrant.granted_at, AccessGrant.grantee_id)
        .all()
    )
    if include_expired:
        return grants
    return [g for g in grants if g.is_active(now)]


def grant(
    db: Session,
    record_id: UUID,
    grantee_id: str,
    level: AccessLevel | str,
    granted_by: Caller,
    *,
    purpose: str = "",
    expires_at: datetime | None = None,
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> AccessGrant:
    """Give ``grantee_id`` access to a record, replacing any grant they already hold."""
    level = _level(level)
    if not grantee_id:
        raise ValidationError("grantee_id is required")
    now = now or utc_now()
    if expires_at is not None and as_utc(expires_at) <= as_utc(now):
        raise ValidationError("expires_at must be in the future")

    record = get_record(db, record_id)
    authorize(db, granted_by, Operation.SHARE, record, now)
    hold_record(db, record.id)

    existing = get_grant(db, record.id, grantee_id)
    if existing is not None:
        existing.level = level
        existing.granted_by = granted_by.caller_id
        existing.granted_at = now
        existing.expires_at = expires_at
        existing.purpose = purpose or ""
        entry = existing
    else:
        entry = AccessGrant(
            record_id=record.id,
            grantee_id=grantee_id,
            level=level,
            granted_by=granted_by.caller_id,
            granted_at=now,
            expires_at=expires_at,
            purpose=purpose or "",
        )
        db.add(entry)
    try:
        with storage_guard(db, "grant access"):
            db.flush()
    except IntegrityError:
        raise ConflictError(
            f"Access for {grantee_id} on record {record_id} was granted concurrently"
        ) from None

    details = f"Record shared with {grantee_id} ({level.value} access)"
    if purpose:
        details += f" for {purpose}"
    if expires_at is not None:
        details += f", expires {as_utc(expires_at).isoformat()}"
    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.SHARED,
        performed_by=granted_by.caller_id,
        details=details,
        origin=origin,
        now=now,
    )
    commit(db, "grant access")
    db.refresh(entry)
    logger.info("Record %s shared with %s (%s) by %s", record.id, grantee_id, level.value, granted_by.caller_id)
    return entry


def revoke(
    db: Session,
    record_id: UUID,
    grantee_id: str,
    revoked_by: Caller,
    *,
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Remove a grant. Idempotent: revoking nothing is not an error.

    Returns whether a grant was actually removed. The attempt is audited
    either way.
    """
    now = now or utc_now()
    record = get_record(db, record_id, include_invalid=True)
    authorize(db, revoked_by, Operation.SHARE, record, now)
    hold_record(db, record.id, active_only=False)

    existing = get_grant(db, record.id, grantee_id)
    if existing is not None:
        with storage_guard(db, "revoke access"):
            db.delete(existing)
            db.flush()

    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.REVOKED,
        performed_by=revoked_by.caller_id,
        details=(
            f"Access revoked for {grantee_id}"
            if existing is not None
            else f"No active grant for {grantee_id}; nothing to revoke"
        ),
        origin=origin,
        now=now,
    )
    commit(db, "revoke access")
    logger.info("Access to record %s revoked for %s by %s", record.id, grantee_id, revoked_by.caller_id)
    return existing is not None
