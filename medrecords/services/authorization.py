"""
Authorization policy for clinical records.

``decide`` is the single place where role, ownership and grants are combined.
It is a pure function: the grant store is reached only through the
``lookup_grant`` callable, and only when the cheaper role and ownership
checks did not already settle the question.

Order of evaluation:
    1. admin                      -> Allow(full)
    2. caller is the patient      -> Allow(full) for read/share, Deny otherwise
    3. caller is the author       -> Allow(full)
    4. active grant >= required   -> Allow(grant level), else Deny("no_grant")
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol, Union
from uuid import UUID

from sqlalchemy.orm import Session

from medrecords.errors import AuthorizationError
from medrecords.models.record import AccessGrant, AccessLevel
from medrecords.utils.datetime_utils import utc_now


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    EMERGENCY_PERSONNEL = "emergency_personnel"
    ADMIN = "admin"


class Operation(str, Enum):
    READ = "read"
    WRITE = "write"
    SHARE = "share"
    INVALIDATE = "invalidate"


_REQUIRED_LEVEL = {
    Operation.READ: AccessLevel.READ,
    Operation.WRITE: AccessLevel.WRITE,
    Operation.SHARE: AccessLevel.FULL,
    Operation.INVALIDATE: AccessLevel.FULL,
}

# Patients manage who sees their record but never author clinical content
_PATIENT_OPERATIONS = {Operation.READ, Operation.SHARE}


@dataclass(frozen=True)
class Caller:
    """Identity handed to us by the authentication layer; trusted as given."""

    caller_id: str
    role: Role


class OwnedRecord(Protocol):
    id: UUID
    patient_id: str
    author_id: str


@dataclass(frozen=True)
class Allow:
    level: AccessLevel
    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: str
    allowed = False


Decision = Union[Allow, Deny]


def level_required_for(operation: Operation) -> AccessLevel:
    return _REQUIRED_LEVEL[Operation(operation)]


def decide(
    caller: Caller,
    operation: Operation,
    record: OwnedRecord,
    *,
    now: datetime,
    lookup_grant: Callable[[], AccessGrant | None],
) -> Decision:
    operation = Operation(operation)

    if caller.role == Role.ADMIN:
        return Allow(AccessLevel.FULL)

    if record.patient_id == caller.caller_id:
        if operation in _PATIENT_OPERATIONS:
            return Allow(AccessLevel.FULL)
        return Deny("patient_cannot_modify")

    if record.author_id == caller.caller_id:
        return Allow(AccessLevel.FULL)

    grant = lookup_grant()
    if grant is not None and grant.permits(level_required_for(operation), now):
        return Allow(AccessLevel(grant.level))
    return Deny("no_grant")


def authorize(
    db: Session,
    caller: Caller,
    operation: Operation,
    record: OwnedRecord,
    now: datetime | None = None,
) -> AccessLevel:
    """
    Evaluate ``decide`` against the grant store.

    Returns the effective level on success. A denial raises
    AuthorizationError and is deliberately not written to the audit trail.
    """
    now = now or utc_now()

    def lookup_grant() -> AccessGrant | None:
        return (
            db.query(AccessGrant)
            .filter(
                AccessGrant.record_id == record.id,
                AccessGrant.grantee_id == caller.caller_id,
            )
            .one_or_none()
        )

    decision = decide(caller, operation, record, now=now, lookup_grant=lookup_grant)
    if isinstance(decision, Deny):
        raise AuthorizationError(
            f"{Role(caller.role).value} {caller.caller_id} may not {Operation(operation).value} "
            f"record {record.id}",
            errors=[decision.reason],
        )
    return decision.level
