"""
Persistence model for versioned clinical records.

- ClinicalRecord  – the live, authoritative state of one clinical encounter
- RecordVersion   – immutable full copy of a superseded state
- AccessGrant     – leveled, optionally expiring permission for a non-owner
- AuditEntry      – immutable, attributed event against a record
- ConsumedEmergencyToken – redeemed emergency token ids, so each token works once
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from medrecords.errors import ImmutableRecordError
from medrecords.models.database import Base
from medrecords.utils.datetime_utils import as_utc, utc_now

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _values(enum_cls):
    return [member.value for member in enum_cls]


class RecordStatus(str, PyEnum):
    DRAFT = "draft"
    COMPLETED = "completed"
    REVIEWED = "reviewed"
    AMENDED = "amended"


class AccessLevel(str, PyEnum):
    READ = "read"
    WRITE = "write"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def satisfies(self, required: "AccessLevel") -> bool:
        """True when this level carries every capability of ``required``."""
        return self.rank >= AccessLevel(required).rank


_LEVEL_RANK = {AccessLevel.READ: 1, AccessLevel.WRITE: 2, AccessLevel.FULL: 3}


class AuditAction(str, PyEnum):
    CREATED = "created"
    UPDATED = "updated"
    VIEWED = "viewed"
    SHARED = "shared"
    REVOKED = "revoked"
    EMERGENCY_ACCESSED = "emergency_accessed"


# ---------------------------------------------------------------------------
# Clinical Record – live state, mutated only through services.versioning
# ---------------------------------------------------------------------------
class ClinicalRecord(Base):
    __tablename__ = "clinical_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(String(64), nullable=False, comment="Subject of the record")
    author_id = Column(String(64), nullable=False, comment="Clinician of record")

    payload = Column(JSONDocument, nullable=False, comment="Full clinical document")
    status = Column(
        Enum(RecordStatus, name="record_status_enum", values_callable=_values),
        nullable=False,
        default=RecordStatus.DRAFT,
    )
    version = Column(Integer, nullable=False, default=1, comment="Optimistic concurrency token")
    is_emergency_accessible = Column(Boolean, nullable=False, default=False)

    updated_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    # Soft delete – records are never removed
    is_valid = Column(Boolean, nullable=False, default=True)
    invalidation_reason = Column(Text)
    invalidated_by = Column(String(64))
    invalidated_at = Column(DateTime(timezone=True))

    versions = relationship(
        "RecordVersion",
        back_populates="record",
        order_by="RecordVersion.version_number",
        lazy="selectin",
    )
    grants = relationship("AccessGrant", back_populates="record", lazy="selectin")

    __table_args__ = (
        Index("ix_records_patient", "patient_id", "created_at"),
        Index("ix_records_author", "author_id", "created_at"),
        Index("ix_records_emergency", "patient_id", "is_emergency_accessible", "is_valid"),
    )


# ---------------------------------------------------------------------------
# Record Version – immutable snapshot of a superseded state
# ---------------------------------------------------------------------------
class RecordVersion(Base):
    __tablename__ = "record_versions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    record_id = Column(Uuid, ForeignKey("clinical_records.id"), nullable=False)
    version_number = Column(Integer, nullable=False)
    payload = Column(JSONDocument, nullable=False, comment="Full copy, not a delta")
    status = Column(
        Enum(RecordStatus, name="record_status_enum", values_callable=_values),
        nullable=False,
    )
    is_emergency_accessible = Column(Boolean, nullable=False)
    modified_by = Column(String(64), nullable=False, comment="Editor who superseded it")
    modified_at = Column(DateTime(timezone=True), nullable=False)
    change_reason = Column(Text, nullable=False)

    record = relationship("ClinicalRecord", back_populates="versions")

    __table_args__ = (
        # Two writers racing on the same base version cannot both commit
        UniqueConstraint("record_id", "version_number", name="uq_record_version"),
    )


# ---------------------------------------------------------------------------
# Access Grant – one per (record, grantee)
# ---------------------------------------------------------------------------
class AccessGrant(Base):
    __tablename__ = "access_grants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    record_id = Column(Uuid, ForeignKey("clinical_records.id"), nullable=False)
    grantee_id = Column(String(64), nullable=False)
    level = Column(
        Enum(AccessLevel, name="access_level_enum", values_callable=_values),
        nullable=False,
    )
    granted_by = Column(String(64), nullable=False)
    granted_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    purpose = Column(Text, nullable=False, default="")

    record = relationship("ClinicalRecord", back_populates="grants")

    def is_active(self, now: datetime) -> bool:
        """Expiry is lazy: a grant is simply ignored once ``expires_at`` has passed."""
        return self.expires_at is None or as_utc(self.expires_at) > as_utc(now)

    def permits(self, required: AccessLevel, now: datetime) -> bool:
        return self.is_active(now) and AccessLevel(self.level).satisfies(required)

    __table_args__ = (
        UniqueConstraint("record_id", "grantee_id", name="uq_grant_record_grantee"),
        Index("ix_grants_grantee", "grantee_id"),
    )


# ---------------------------------------------------------------------------
# Audit Entry – append-only compliance trail
# ---------------------------------------------------------------------------
class AuditEntry(Base):
    __tablename__ = "audit_entries"

    # Autoincrement id doubles as the append sequence
    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Uuid, ForeignKey("clinical_records.id"), nullable=False)
    action = Column(
        Enum(AuditAction, name="audit_action_enum", values_callable=_values),
        nullable=False,
    )
    performed_by = Column(String(64), nullable=True, comment="NULL for anonymous emergency access")
    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    details = Column(Text, nullable=False, default="")
    origin_address = Column(String(45))
    origin_agent = Column(String(500))

    __table_args__ = (
        Index("ix_audit_record", "record_id", "id"),
        Index("ix_audit_performed_by", "performed_by"),
        Index("ix_audit_timestamp", "timestamp"),
    )


# ---------------------------------------------------------------------------
# Consumed Emergency Token – one row per redeemed token id
# ---------------------------------------------------------------------------
class ConsumedEmergencyToken(Base):
    __tablename__ = "consumed_emergency_tokens"

    token_id = Column(String(36), primary_key=True, comment="jti claim of the sealed token")
    patient_id = Column(String(64), nullable=False)
    consumed_by = Column(String(64), nullable=True, comment="NULL for anonymous scans")
    consumed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


def _refuse_change(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} rows are append-only and cannot be changed"
    )


for _immutable in (RecordVersion, AuditEntry, ConsumedEmergencyToken):
    event.listen(_immutable, "before_update", _refuse_change)
    event.listen(_immutable, "before_delete", _refuse_change)
