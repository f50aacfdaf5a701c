"""
Audit logging service.
Append-only service ledger with integrity hashing.

Degraded-audit policy: `append` writes inside a SAVEPOINT nested in the
caller's transaction. If that insert fails, only the SAVEPOINT is rolled
back, an `audit_degraded` warning is logged and None is returned, so the
primary mutation still commits. The ledger is for accountability; it is not
the source of truth for current state.
"""
import enum
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ServiceAuditLog, utcnow
from .capabilities import Actor


logger = structlog.get_logger(__name__)


class AuditAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    SOFT_DELETED = "soft_deleted"
    RESTORED = "restored"
    HARD_DELETED = "hard_deleted"
    USER_PERMISSIONS_UPDATED = "user_permissions_updated"


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _canonical_json(entry: ServiceAuditLog) -> str:
    canonical_data = {
        "service_id": entry.service_id,
        "action": entry.action,
        "performed_by": entry.performed_by,
        "performed_by_username": entry.performed_by_username,
        "performed_by_role": entry.performed_by_role,
        "subject_user_id": entry.subject_user_id,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "timestamp": _naive_utc(entry.timestamp).isoformat(),
        "notes": entry.notes,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    return json.dumps(canonical_data, sort_keys=True, default=str)


class AuditLog:
    def __init__(self, integrity_secret: Optional[str] = None):
        self.integrity_secret = integrity_secret or settings.audit_integrity_secret or settings.jwt_secret

    def _hash(self, entry: ServiceAuditLog) -> str:
        hash_input = f"{_canonical_json(entry)}:{self.integrity_secret}"
        return hashlib.sha256(hash_input.encode()).hexdigest()

    def append(
        self,
        db: Session,
        *,
        action: AuditAction,
        actor: Actor,
        service_id: Optional[int] = None,
        subject_user_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Optional[ServiceAuditLog]:
        """
        Insert one ledger entry inside the caller's transaction.

        The timestamp is always assigned here; callers cannot supply one.
        Does not commit. Returns None when the write was degraded.
        """
        entry = ServiceAuditLog(
            service_id=service_id,
            action=AuditAction(action).value,
            performed_by=actor.user_id,
            performed_by_username=actor.username,
            performed_by_role=actor.role.value,
            subject_user_id=subject_user_id,
            old_values=old_values,
            new_values=new_values,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            timestamp=utcnow(),
            notes=notes,
        )
        entry.integrity_hash = self._hash(entry)

        try:
            with db.begin_nested():
                db.add(entry)
                db.flush()
        except SQLAlchemyError as e:
            logger.warning(
                "audit_degraded",
                action=entry.action,
                service_id=service_id,
                performed_by=actor.user_id,
                error=str(e),
            )
            return None

        logger.info(
            "audit_appended",
            action=entry.action,
            service_id=service_id,
            performed_by=actor.username,
            role=actor.role.value,
        )
        return entry

    def query(self, db: Session, service_id: int) -> List[ServiceAuditLog]:
        """Entries for one service, oldest first."""
        return (
            db.query(ServiceAuditLog)
            .filter(ServiceAuditLog.service_id == service_id)
            .order_by(ServiceAuditLog.timestamp.asc(), ServiceAuditLog.id.asc())
            .all()
        )

    def query_all(self, db: Session, limit: Optional[int] = None, offset: int = 0) -> List[ServiceAuditLog]:
        """Global feed, newest first; page size is clamped to AUDIT_PAGE_MAX."""
        if limit is None:
            limit = settings.audit_page_size
        limit = min(max(1, limit), settings.audit_page_max)
        offset = max(0, offset)
        return (
            db.query(ServiceAuditLog)
            .order_by(ServiceAuditLog.timestamp.desc(), ServiceAuditLog.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def get(self, db: Session, entry_id: int) -> Optional[ServiceAuditLog]:
        return db.query(ServiceAuditLog).filter(ServiceAuditLog.id == entry_id).first()

    def verify(self, entry: ServiceAuditLog) -> bool:
        """Recompute the integrity hash of a stored entry."""
        if not entry.integrity_hash:
            return False
        return entry.integrity_hash == self._hash(entry)


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Changed keys only, as {key: {"before": old, "after": new}}; a missing key counts as None."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in before.keys() | after.keys()
        if before.get(key) != after.get(key)
    }
