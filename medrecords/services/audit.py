"""Append-only audit trail for clinical records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from medrecords.models.database import storage_guard
from medrecords.models.record import AuditAction, AuditEntry, ClinicalRecord
from medrecords.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestOrigin:
    """Where a request came from, as reported by the transport layer."""

    address: str | None = None
    agent: str | None = None


@dataclass(frozen=True)
class AuditView:
    """An audit entry joined with the owning record's current patient."""

    record_id: UUID
    patient_id: str
    action: AuditAction
    performed_by: str | None
    timestamp: datetime
    details: str
    origin_address: str | None
    origin_agent: str | None


def append(
    db: Session,
    *,
    record_id: UUID,
    action: AuditAction,
    performed_by: str | None,
    details: str = "",
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> AuditEntry:
    """
    Write an immutable audit entry in the caller's transaction.

    The entry is flushed immediately; if the store rejects it the whole
    unit of work is rolled back and StorageUnavailableError propagates, so
    the triggering mutation never commits unaudited.
    """
    origin = origin or RequestOrigin()
    entry = AuditEntry(
        record_id=record_id,
        action=action,
        performed_by=performed_by,
        timestamp=now or utc_now(),
        details=details or "",
        origin_address=origin.address,
        origin_agent=origin.agent[:500] if origin.agent else None,
    )
    with storage_guard(db, f"audit append ({action.value})"):
        db.add(entry)
        db.flush()
    logger.info("AUDIT: %s %s record/%s", performed_by or "anonymous", action.value, record_id)
    return entry


def list_for_record(db: Session, record_id: UUID) -> list[AuditEntry]:
    """All entries for one record in append order."""
    return (
        db.query(AuditEntry)
        .filter(AuditEntry.record_id == record_id)
        .order_by(AuditEntry.id)
        .all()
    )


def _joined(db: Session):
    return db.query(AuditEntry, ClinicalRecord.patient_id).join(
        ClinicalRecord, ClinicalRecord.id == AuditEntry.record_id
    )


def _to_views(rows) -> list[AuditView]:
    return [
        AuditView(
            record_id=entry.record_id,
            patient_id=patient_id,
            action=entry.action,
            performed_by=entry.performed_by,
            timestamp=entry.timestamp,
            details=entry.details,
            origin_address=entry.origin_address,
            origin_agent=entry.origin_agent,
        )
        for entry, patient_id in rows
    ]


def list_for_user(db: Session, user_id: str) -> list[AuditView]:
    """
    Activity performed by ``user_id``, newest first.

    The patient is read from the record at query time; entries do not carry
    a frozen copy of it.
    """
    rows = (
        _joined(db)
        .filter(AuditEntry.performed_by == user_id)
        .order_by(AuditEntry.id.desc())
        .all()
    )
    return _to_views(rows)


def list_for_patient(db: Session, patient_id: str) -> list[AuditView]:
    """Every entry on records whose current subject is ``patient_id``, newest first."""
    rows = (
        _joined(db)
        .filter(ClinicalRecord.patient_id == patient_id)
        .order_by(AuditEntry.id.desc())
        .all()
    )
    return _to_views(rows)


def list_system(
    db: Session,
    *,
    action: AuditAction | None = None,
    performed_by: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[AuditView]:
    """System-wide log for administrators, newest first, paginated."""
    query = _joined(db)
    if action is not None:
        query = query.filter(AuditEntry.action == action)
    if performed_by is not None:
        query = query.filter(AuditEntry.performed_by == performed_by)
    if since is not None:
        query = query.filter(AuditEntry.timestamp >= since)
    if until is not None:
        query = query.filter(AuditEntry.timestamp <= until)
    rows = query.order_by(AuditEntry.id.desc()).offset(offset).limit(limit).all()
    return _to_views(rows)
