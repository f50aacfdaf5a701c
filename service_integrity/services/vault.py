"""
Soft-delete vault.

Soft delete and restore each run as a single transaction holding a row lock
on the row they consume (the live service, or the deleted-service record),
with the ledger entry written inside the same transaction. A service id is
therefore never both live and pending restore, and a restore can only
happen once.
"""
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..db import commit_or_raise, datastore_operation
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..models.models import DeletedService, Service, utcnow
from ..schemas.services import ServiceSnapshot
from .audit import AuditAction, AuditLog
from .capabilities import Actor, Capability
from .lifecycle import snapshot
from .permissions import PermissionRegistry


logger = structlog.get_logger(__name__)

CONFIRMATION_FIELD = "description"


class SoftDeleteVault:
    def __init__(self, audit: AuditLog, permissions: PermissionRegistry):
        self.audit = audit
        self.permissions = permissions

    def _lock_service(self, db: Session, service_id: int) -> Service:
        service = db.query(Service).filter(Service.id == service_id).with_for_update().first()
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    def _require_delete_capability(self, db: Session, actor: Actor) -> None:
        if not self.permissions.can_user_delete_services(db, actor.user_id):
            raise AuthorizationError("You do not have permission to delete services")

    @datastore_operation("soft_delete")
    def soft_delete(
        self,
        db: Session,
        actor: Actor,
        service_id: int,
        reason: Optional[str] = None,
    ) -> DeletedService:
        self._require_delete_capability(db, actor)
        service = self._lock_service(db, service_id)

        existing = db.query(DeletedService).filter(DeletedService.service_id == service_id).first()
        if existing is not None:
            # A live row with an archived id means an earlier write went wrong
            raise ConflictError(f"Service {service_id} already has a deletion record")

        original_service_data = snapshot(service)
        record = DeletedService(
            service_id=service.id,
            original_service_data=original_service_data,
            deleted_by=actor.user_id,
            deleted_by_username=actor.username,
            deleted_by_role=actor.role.value,
            delete_reason=reason or None,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            deleted_at=utcnow(),
            can_be_restored=True,
        )
        db.add(record)
        db.flush()

        self.audit.append(
            db,
            action=AuditAction.SOFT_DELETED,
            actor=actor,
            service_id=service_id,
            old_values=original_service_data,
            new_values={"status": "soft_deleted"},
            notes=reason or "Service soft-deleted (kept for restore)",
        )

        db.delete(service)
        commit_or_raise(db, "soft_delete")
        db.refresh(record)
        logger.info("service_soft_deleted", service_id=service_id, deleted_by=actor.username, reason=reason)
        return record

    @datastore_operation("restore")
    def restore(self, db: Session, actor: Actor, service_id: int) -> Tuple[Service, DeletedService]:
        """
        Recreate a soft-deleted service under a new id.

        Raises:
            NotFoundError: no deletion record for `service_id`
            ConflictError: record already restored or marked non-restorable
        """
        if not self.permissions.allows(db, actor, Capability.RESTORE_SERVICES):
            raise AuthorizationError("Only administrators can restore services")

        record = (
            db.query(DeletedService)
            .filter(DeletedService.service_id == service_id)
            .with_for_update()
            .first()
        )
        if record is None:
            raise NotFoundError(f"No deleted service with id {service_id}")
        if record.restored_at is not None:
            raise ConflictError(
                f"Service {service_id} was already restored as {record.restored_as_service_id}"
            )
        if not record.can_be_restored:
            raise ConflictError(f"Service {service_id} is marked as not restorable")
        if db.query(Service.id).filter(Service.id == service_id).first() is not None:
            raise ConflictError(f"Service {service_id} is still live")

        data = ServiceSnapshot.model_validate(record.original_service_data).model_dump(exclude={"id"})
        data["status"] = data["status"].value
        restored = Service(**data)
        db.add(restored)
        db.flush()
        if restored.id == service_id:
            db.rollback()
            raise ConflictError(f"Restore of service {service_id} would reuse its id")

        record.restored_by = actor.user_id
        record.restored_at = utcnow()
        record.restored_as_service_id = restored.id
        db.flush()

        self.audit.append(
            db,
            action=AuditAction.RESTORED,
            actor=actor,
            service_id=restored.id,
            old_values={"status": "soft_deleted", "service_id": service_id},
            new_values=snapshot(restored),
            notes=f"Service restored from soft delete (original id: {service_id}, new id: {restored.id})",
        )
        commit_or_raise(db, "restore")
        db.refresh(restored)
        db.refresh(record)
        logger.info("service_restored", original_service_id=service_id, service_id=restored.id, restored_by=actor.username)
        return restored, record

    def list_deleted(self, db: Session) -> List[DeletedService]:
        """Records not yet restored, newest first."""
        return (
            db.query(DeletedService)
            .filter(DeletedService.restored_at.is_(None))
            .order_by(DeletedService.deleted_at.desc(), DeletedService.id.desc())
            .all()
        )

    def get_deleted(self, db: Session, service_id: int) -> Optional[DeletedService]:
        return db.query(DeletedService).filter(DeletedService.service_id == service_id).first()

    # -- hard delete ------------------------------------------------------

    def _require_hard_delete(self, db: Session, actor: Actor) -> None:
        if not self.permissions.allows(db, actor, Capability.HARD_DELETE_SERVICES):
            raise AuthorizationError("Only administrators can permanently delete services")
        self._require_delete_capability(db, actor)

    def confirmation_value(self, db: Session, actor: Actor, service_id: int) -> Dict[str, Any]:
        """Separate, admin-only step that reveals what a hard delete must be confirmed with."""
        self._require_hard_delete(db, actor)
        service = db.query(Service).filter(Service.id == service_id).first()
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        return {
            "service_id": service.id,
            "field": CONFIRMATION_FIELD,
            "expected_value": getattr(service, CONFIRMATION_FIELD),
        }

    @datastore_operation("hard_delete")
    def hard_delete(self, db: Session, actor: Actor, service_id: int, confirmation: str) -> Dict[str, Any]:
        """
        Permanently remove a service, no snapshot kept in the vault.

        `confirmation` must equal the service description exactly. A mismatch
        never reveals the expected value.
        """
        self._require_hard_delete(db, actor)
        service = self._lock_service(db, service_id)

        if confirmation != getattr(service, CONFIRMATION_FIELD):
            db.rollback()
            logger.warning("hard_delete_confirmation_mismatch", service_id=service_id, performed_by=actor.username)
            raise ValidationError(f"Confirmation does not match the service {CONFIRMATION_FIELD}")

        deleted_data = snapshot(service)
        self.audit.append(
            db,
            action=AuditAction.HARD_DELETED,
            actor=actor,
            service_id=service_id,
            old_values=deleted_data,
            new_values={"status": "hard_deleted"},
            notes="Service permanently deleted",
        )
        db.delete(service)
        commit_or_raise(db, "hard_delete")
        logger.warning("service_hard_deleted", service_id=service_id, performed_by=actor.username)
        return deleted_data
