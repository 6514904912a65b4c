"""
Versioned clinical records.

Every content change follows the same protocol inside one transaction:

    1. read the live record and remember its ``version``
    2. append a full snapshot of the live state tagged with that version
    3. overwrite the live state with ``WHERE version = <remembered>`` (compare-and-swap)
    4. append the ``updated`` audit entry
    5. commit

A writer that lost the race either hits the unique ``(record_id, version_number)``
constraint at step 2 or swaps zero rows at step 3; both roll the whole unit back.
Callers that pass ``expected_version`` get a ConflictError straight away,
otherwise the update is retried against a fresh read a bounded number of times.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Union
from uuid import UUID, uuid4

import pydantic
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medrecords.config import settings
from medrecords.errors import ConflictError, NotFoundError, ValidationError, VersionNotFoundError
from medrecords.models.database import commit, storage_guard
from medrecords.models.record import AuditAction, ClinicalRecord, RecordStatus, RecordVersion
from medrecords.schemas.clinical import CLINICAL_RECORD_SCHEMA
from medrecords.schemas.payload import ClinicalPayload
from medrecords.services import audit
from medrecords.services.audit import RequestOrigin
from medrecords.services.validation import require_valid
from medrecords.utils.datetime_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CHANGE_REASON = "Record updated"
_INITIAL_STATUSES = {RecordStatus.DRAFT, RecordStatus.COMPLETED}


class Snapshot(Protocol):
    """Anything that can hand the engine a full, JSON-ready copy of itself."""

    def snapshot(self) -> dict[str, Any]: ...


PayloadLike = Union[Snapshot, Mapping[str, Any]]

_VISIT_DATE = pydantic.TypeAdapter(datetime)


@dataclass(frozen=True)
class VersionView:
    """One version of a record, whether it is the live state or a snapshot."""

    record_id: UUID
    version_number: int
    payload: dict[str, Any]
    status: RecordStatus
    is_emergency_accessible: bool
    is_current: bool
    modified_by: str | None
    modified_at: datetime | None
    change_reason: str | None

    @classmethod
    def from_record(cls, record: ClinicalRecord) -> VersionView:
        return cls(
            record_id=record.id,
            version_number=record.version,
            payload=copy.deepcopy(record.payload),
            status=RecordStatus(record.status),
            is_emergency_accessible=record.is_emergency_accessible,
            is_current=True,
            modified_by=record.updated_by,
            modified_at=record.updated_at,
            change_reason=None,
        )

    @classmethod
    def from_snapshot(cls, snapshot: RecordVersion) -> VersionView:
        return cls(
            record_id=snapshot.record_id,
            version_number=snapshot.version_number,
            payload=copy.deepcopy(snapshot.payload),
            status=RecordStatus(snapshot.status),
            is_emergency_accessible=snapshot.is_emergency_accessible,
            is_current=False,
            modified_by=snapshot.modified_by,
            modified_at=snapshot.modified_at,
            change_reason=snapshot.change_reason,
        )


class _VersionRace(Exception):
    """Internal signal: another writer committed against the same base version."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _document(payload: PayloadLike) -> dict[str, Any]:
    """
    Normalize a payload into the stored form.

    Every stored document must parse as a ClinicalPayload, since the
    emergency projection reads it back through that model.
    """
    if isinstance(payload, Mapping):
        document = copy.deepcopy(dict(payload))
    else:
        document = payload.snapshot()
    require_valid(document, CLINICAL_RECORD_SCHEMA, what="clinical payload")
    try:
        return ClinicalPayload.model_validate(document).snapshot()
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid clinical payload",
            errors=[
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ],
        ) from None


def _status(value: RecordStatus | str) -> RecordStatus:
    try:
        return RecordStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown record status: {value!r}") from None


def get_record(db: Session, record_id: UUID, *, include_invalid: bool = False) -> ClinicalRecord:
    """Fresh read of a record; invalidated records count as missing unless asked for."""
    record = db.get(ClinicalRecord, record_id, populate_existing=True)
    if record is None or (not record.is_valid and not include_invalid):
        raise NotFoundError(f"Medical record {record_id} not found")
    return record


def hold_record(db: Session, record_id: UUID, *, active_only: bool = True) -> None:
    """
    Take the record row into the current transaction with a no-op write.

    Grant and revoke call this so they serialize with ``invalidate``: whichever
    commits second sees the other's result. With ``active_only`` an
    invalidated record counts as missing.
    """
    criteria = [ClinicalRecord.id == record_id]
    if active_only:
        criteria.append(ClinicalRecord.is_valid.is_(True))
    with storage_guard(db, "hold record"):
        held = (
            db.query(ClinicalRecord)
            .filter(*criteria)
            .update({ClinicalRecord.version: ClinicalRecord.version}, synchronize_session=False)
        )
    if held != 1:
        db.rollback()
        raise NotFoundError(f"Medical record {record_id} not found")


def visit_recency(record: ClinicalRecord) -> datetime:
    """When the encounter happened: the payload's visit date, else the creation time."""
    visited = (record.payload or {}).get("visit_date")
    if visited:
        return as_utc(_VISIT_DATE.validate_python(visited))
    return as_utc(record.created_at)


def newest_first(records: Iterable[ClinicalRecord]) -> list[ClinicalRecord]:
    """Order by visit recency, newest first, ties broken by record id."""
    by_id = sorted(records, key=lambda r: str(r.id))
    return sorted(by_id, key=visit_recency, reverse=True)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def create_record(
    db: Session,
    payload: PayloadLike,
    author_id: str,
    patient_id: str,
    *,
    status: RecordStatus | str = RecordStatus.DRAFT,
    is_emergency_accessible: bool = False,
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> ClinicalRecord:
    """Create a record at version 1 with an empty history and a ``created`` audit entry."""
    if not author_id or not patient_id:
        raise ValidationError("Both author_id and patient_id are required")
    status = _status(status)
    if status not in _INITIAL_STATUSES:
        raise ValidationError(f"A new record cannot start as {status.value}")
    document = _document(payload)
    now = now or utc_now()

    record = ClinicalRecord(
        id=uuid4(),
        patient_id=patient_id,
        author_id=author_id,
        payload=document,
        status=status,
        version=1,
        is_emergency_accessible=is_emergency_accessible,
        updated_by=author_id,
        created_at=now,
        updated_at=now,
        is_valid=True,
    )
    with storage_guard(db, "create record"):
        db.add(record)
        db.flush()

    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.CREATED,
        performed_by=author_id,
        details="Medical record created",
        origin=origin,
        now=now,
    )
    commit(db, "create record")
    db.refresh(record)
    logger.info("Medical record %s created by %s for patient %s", record.id, author_id, patient_id)
    return record


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

def _apply_update(
    db: Session,
    record: ClinicalRecord,
    document: dict[str, Any],
    editor_id: str,
    reason: str,
    status: RecordStatus | None,
    is_emergency_accessible: bool | None,
    origin: RequestOrigin | None,
    now: datetime,
) -> ClinicalRecord:
    base_version = record.version
    snapshot = RecordVersion(
        record_id=record.id,
        version_number=base_version,
        payload=copy.deepcopy(record.payload),
        status=record.status,
        is_emergency_accessible=record.is_emergency_accessible,
        modified_by=editor_id,
        modified_at=now,
        change_reason=reason,
    )
    values: dict[Any, Any] = {
        ClinicalRecord.payload: document,
        ClinicalRecord.version: base_version + 1,
        ClinicalRecord.updated_by: editor_id,
        ClinicalRecord.updated_at: now,
    }
    if status is not None:
        values[ClinicalRecord.status] = status
    if is_emergency_accessible is not None:
        values[ClinicalRecord.is_emergency_accessible] = is_emergency_accessible

    try:
        with storage_guard(db, "update record"):
            db.add(snapshot)
            db.flush()
            swapped = (
                db.query(ClinicalRecord)
                .filter(
                    ClinicalRecord.id == record.id,
                    ClinicalRecord.version == base_version,
                    ClinicalRecord.is_valid.is_(True),
                )
                .update(values, synchronize_session=False)
            )
    except IntegrityError as exc:
        raise _VersionRace() from exc
    if swapped != 1:
        db.rollback()
        raise _VersionRace()

    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.UPDATED,
        performed_by=editor_id,
        details=f"Record updated to version {base_version + 1}. Reason: {reason}",
        origin=origin,
        now=now,
    )
    try:
        commit(db, "update record")
    except IntegrityError as exc:
        raise _VersionRace() from exc
    db.refresh(record)
    return record


def update_record(
    db: Session,
    record_id: UUID,
    payload: PayloadLike,
    editor_id: str,
    change_reason: str | None = None,
    *,
    expected_version: int | None = None,
    status: RecordStatus | str | None = None,
    is_emergency_accessible: bool | None = None,
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> ClinicalRecord:
    """
    Replace the clinical content of a record, keeping the superseded state as history.

    Authorization must already have been checked by the caller.
    ``expected_version`` is the optimistic concurrency token the caller read;
    a mismatch raises ConflictError without retrying.
    """
    document = _document(payload)
    reason = (change_reason or "").strip() or DEFAULT_CHANGE_REASON
    status = _status(status) if status is not None else None
    now = now or utc_now()
    attempts = max(1, settings.VERSION_CONFLICT_RETRIES)

    for attempt in range(1, attempts + 1):
        record = get_record(db, record_id)
        if expected_version is not None and record.version != expected_version:
            raise ConflictError(
                f"Record {record_id} is at version {record.version}, not {expected_version}"
            )
        try:
            record = _apply_update(
                db, record, document, editor_id, reason, status, is_emergency_accessible, origin, now
            )
        except _VersionRace:
            if expected_version is not None:
                raise ConflictError(
                    f"Record {record_id} was modified concurrently at version {expected_version}"
                ) from None
            logger.warning(
                "Version race on record %s (attempt %d/%d), retrying", record_id, attempt, attempts
            )
            continue
        logger.info("Medical record %s updated to version %d by %s", record_id, record.version, editor_id)
        return record

    raise ConflictError(f"Record {record_id} kept changing, gave up after {attempts} attempts")


# ---------------------------------------------------------------------------
# Invalidate (soft delete)
# ---------------------------------------------------------------------------

def invalidate(
    db: Session,
    record_id: UUID,
    reason: str,
    actor_id: str,
    *,
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> ClinicalRecord:
    """Retire a record. Version and history are left untouched."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("An invalidation reason is required")
    now = now or utc_now()
    record = get_record(db, record_id)

    with storage_guard(db, "invalidate record"):
        swapped = (
            db.query(ClinicalRecord)
            .filter(
                ClinicalRecord.id == record.id,
                ClinicalRecord.version == record.version,
                ClinicalRecord.is_valid.is_(True),
            )
            .update(
                {
                    ClinicalRecord.is_valid: False,
                    ClinicalRecord.invalidation_reason: reason,
                    ClinicalRecord.invalidated_by: actor_id,
                    ClinicalRecord.invalidated_at: now,
                },
                synchronize_session=False,
            )
        )
    if swapped != 1:
        db.rollback()
        raise ConflictError(f"Record {record_id} changed while being invalidated")

    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.UPDATED,
        performed_by=actor_id,
        details=f"Record invalidated. Reason: {reason}",
        origin=origin,
        now=now,
    )
    commit(db, "invalidate record")
    db.refresh(record)
    logger.info("Medical record %s invalidated by %s", record_id, actor_id)
    return record


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_version(db: Session, record_id: UUID, version_number: int) -> VersionView:
    """
    Return one version of a record.

    The live version is served from the record itself; it only enters
    history once something supersedes it.
    """
    record = get_record(db, record_id, include_invalid=True)
    if version_number == record.version:
        return VersionView.from_record(record)

    snapshot = (
        db.query(RecordVersion)
        .filter(
            RecordVersion.record_id == record_id,
            RecordVersion.version_number == version_number,
        )
        .one_or_none()
    )
    if snapshot is None:
        raise VersionNotFoundError(f"Version {version_number} of record {record_id} not found")
    return VersionView.from_snapshot(snapshot)


def list_versions(db: Session, record_id: UUID) -> list[VersionView]:
    """History followed by the live version, oldest first."""
    record = get_record(db, record_id, include_invalid=True)
    snapshots = (
        db.query(RecordVersion)
        .filter(RecordVersion.record_id == record_id)
        .order_by(RecordVersion.version_number)
        .all()
    )
    return [VersionView.from_snapshot(s) for s in snapshots] + [VersionView.from_record(record)]


def list_active_records(
    db: Session,
    *,
    patient_id: str | None = None,
    author_id: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[ClinicalRecord]:
    """Valid records, newest visit first, optionally scoped to a patient or author."""
    query = db.query(ClinicalRecord).filter(ClinicalRecord.is_valid.is_(True))
    if patient_id is not None:
        query = query.filter(ClinicalRecord.patient_id == patient_id)
    if author_id is not None:
        query = query.filter(ClinicalRecord.author_id == author_id)
    records = newest_first(query.all())
    if limit is None:
        return records[offset:]
    return records[offset : offset + limit]


def mark_viewed(
    db: Session,
    record: ClinicalRecord,
    viewer_id: str,
    *,
    details: str = "Medical record viewed",
    origin: RequestOrigin | None = None,
    now: datetime | None = None,
) -> None:
    """Attribute a read of ``record`` to ``viewer_id``."""
    audit.append(
        db,
        record_id=record.id,
        action=AuditAction.VIEWED,
        performed_by=viewer_id,
        details=details,
        origin=origin,
        now=now,
    )
    commit(db, "record view")
