"""
Service lifecycle: creation, role-scoped edits and gated status transitions.

Every accepted transition writes exactly one `status_changed` ledger entry in
the same transaction as the row change, then notifies the dispatcher after
commit. Outcome flags (`is_completely_fixed`, `repair_failed`,
`customer_refuses_repair`) are derived from status, and the payload of a
terminal state is cleared whenever the service leaves it, so contradictory
combinations cannot be stored.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import commit_or_raise, datastore_operation
from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..models.models import Service, ServiceStatus, TERMINAL_STATUSES, utcnow
from ..schemas.services import (
    AssignTransition,
    CancelTransition,
    CompleteTransition,
    CustomerRefusedTransition,
    ProgressTransition,
    RepairFailedTransition,
    ServiceCreate,
    ServiceEdit,
    ServiceSnapshot,
)
from .audit import AuditAction, AuditLog, compute_diff
from .capabilities import Actor, Capability, Role
from .notifications import NotificationDispatcher, dispatch_status_change
from .permissions import PermissionRegistry


logger = structlog.get_logger(__name__)


# Moves available to non-admin roles; terminal states have no exits here
NON_ADMIN_TRANSITIONS = {
    ServiceStatus.PENDING: {ServiceStatus.SCHEDULED, ServiceStatus.IN_PROGRESS},
    ServiceStatus.ASSIGNED: {
        ServiceStatus.SCHEDULED,
        ServiceStatus.IN_PROGRESS,
        ServiceStatus.CUSTOMER_REFUSED_REPAIR,
    },
    ServiceStatus.SCHEDULED: {
        ServiceStatus.IN_PROGRESS,
        ServiceStatus.WAITING_PARTS,
        ServiceStatus.CUSTOMER_REFUSED_REPAIR,
    },
    ServiceStatus.IN_PROGRESS: {
        ServiceStatus.WAITING_PARTS,
        ServiceStatus.DEVICE_PARTS_REMOVED,
        ServiceStatus.COMPLETED,
        ServiceStatus.REPAIR_FAILED,
        ServiceStatus.CUSTOMER_REFUSED_REPAIR,
    },
    ServiceStatus.WAITING_PARTS: {
        ServiceStatus.IN_PROGRESS,
        ServiceStatus.DEVICE_PARTS_REMOVED,
        ServiceStatus.COMPLETED,
        ServiceStatus.REPAIR_FAILED,
    },
    ServiceStatus.DEVICE_PARTS_REMOVED: {
        ServiceStatus.IN_PROGRESS,
        ServiceStatus.WAITING_PARTS,
        ServiceStatus.COMPLETED,
        ServiceStatus.REPAIR_FAILED,
    },
}

OUTCOME_FIELDS = {
    ServiceStatus.COMPLETED: ("completed_date",),
    ServiceStatus.REPAIR_FAILED: ("repair_failure_reason", "replaced_parts_before_failure", "repair_failure_date"),
    ServiceStatus.CUSTOMER_REFUSED_REPAIR: ("customer_refusal_reason",),
    ServiceStatus.CANCELLED: ("cancellation_reason",),
}

EDITABLE_FIELDS = {
    Role.ADMIN: frozenset(ServiceEdit.model_fields),
    Role.TECHNICIAN: frozenset({"technician_notes", "machine_notes", "used_parts", "cost"}),
    Role.BUSINESS_PARTNER: frozenset({"description", "warranty_status", "scheduled_date", "partner_company_name"}),
}

PARTNER_EDITABLE_STATUSES = frozenset({ServiceStatus.PENDING, ServiceStatus.SCHEDULED})

NOT_NULL_FIELDS = frozenset({"description", "warranty_status", "client_id", "appliance_id"})


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def local_today() -> date:
    return datetime.now(pytz.timezone(settings.tz_default)).date()


def snapshot(service: Service) -> Dict[str, Any]:
    """Full JSON-safe copy of every column of the service."""
    return ServiceSnapshot.model_validate(service).model_dump(mode="json")


class ServiceLifecycle:
    def __init__(
        self,
        audit: AuditLog,
        permissions: PermissionRegistry,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.audit = audit
        self.permissions = permissions
        self.dispatcher = dispatcher

    # -- access -----------------------------------------------------------

    def _load(self, db: Session, service_id: int, lock: bool = False) -> Service:
        query = db.query(Service).filter(Service.id == service_id)
        if lock:
            query = query.with_for_update()
        service = query.first()
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    def authorize_service_access(self, actor: Actor, service: Service) -> None:
        """Ownership gate: admins pass, technicians and partners only on their own services."""
        if actor.is_admin:
            return
        if actor.role == Role.TECHNICIAN:
            if actor.technician_id is None or service.technician_id != actor.technician_id:
                raise AuthorizationError("Technicians can only act on services assigned to them")
            return
        if actor.role == Role.BUSINESS_PARTNER:
            if service.business_partner_id != actor.user_id:
                raise AuthorizationError("Business partners can only act on their own services")
            return
        raise AuthorizationError("Role is not allowed to act on services")

    def get_service(self, db: Session, actor: Actor, service_id: int) -> Service:
        service = self._load(db, service_id)
        if not self.permissions.allows(db, actor, Capability.VIEW_ALL_SERVICES):
            self.authorize_service_access(actor, service)
        return service

    def list_services(
        self,
        db: Session,
        actor: Actor,
        status: Optional[ServiceStatus] = None,
        limit: int = 200,
    ) -> List[Service]:
        query = db.query(Service)
        if not self.permissions.allows(db, actor, Capability.VIEW_ALL_SERVICES):
            if actor.role == Role.TECHNICIAN:
                if actor.technician_id is None:
                    return []
                query = query.filter(Service.technician_id == actor.technician_id)
            elif actor.role == Role.BUSINESS_PARTNER:
                query = query.filter(Service.business_partner_id == actor.user_id)
            else:
                raise AuthorizationError("Role is not allowed to list services")
        if status is not None:
            query = query.filter(Service.status == ServiceStatus(status).value)
        limit = min(max(1, limit), 1000)
        return query.order_by(Service.created_at.desc(), Service.id.desc()).limit(limit).all()

    # -- create / edit ----------------------------------------------------

    @datastore_operation("create_service")
    def create(self, db: Session, actor: Actor, payload: ServiceCreate) -> Service:
        if not self.permissions.allows(db, actor, Capability.CREATE_SERVICE):
            raise AuthorizationError("Role is not allowed to create services")

        status = ServiceStatus.PENDING
        technician_id = None
        if payload.technician_id is not None:
            if not self.permissions.allows(db, actor, Capability.ASSIGN_TECHNICIAN):
                raise AuthorizationError("Only administrators can assign a technician")
            technician_id = payload.technician_id
            status = ServiceStatus.ASSIGNED

        service = Service(
            client_id=payload.client_id,
            appliance_id=payload.appliance_id,
            description=payload.description.strip(),
            warranty_status=payload.warranty_status,
            technician_id=technician_id,
            scheduled_date=payload.scheduled_date,
            business_partner_id=actor.user_id if actor.role == Role.BUSINESS_PARTNER else None,
            partner_company_name=payload.partner_company_name,
            status=status.value,
            created_at=utcnow(),
        )
        db.add(service)
        db.flush()

        self.audit.append(
            db,
            action=AuditAction.CREATED,
            actor=actor,
            service_id=service.id,
            new_values=snapshot(service),
        )
        commit_or_raise(db, "create_service")
        db.refresh(service)
        logger.info("service_created", service_id=service.id, status=service.status, created_by=actor.username)
        return service

    @datastore_operation("edit_service")
    def edit(self, db: Session, actor: Actor, service_id: int, changes: ServiceEdit) -> Service:
        service = self._load(db, service_id, lock=True)
        self.authorize_service_access(actor, service)
        if not self.permissions.allows(db, actor, Capability.EDIT_SERVICE):
            raise AuthorizationError("Role is not allowed to edit services")

        updates = changes.model_dump(exclude_unset=True)
        forbidden = sorted(set(updates) - EDITABLE_FIELDS.get(actor.role, frozenset()))
        if forbidden:
            raise AuthorizationError(f"Role {actor.role.value} cannot edit: {', '.join(forbidden)}")
        if actor.role == Role.BUSINESS_PARTNER and ServiceStatus(service.status) not in PARTNER_EDITABLE_STATUSES:
            raise AuthorizationError("Business partners can only edit pending or scheduled services")
        nulled = sorted(f for f in NOT_NULL_FIELDS if f in updates and updates[f] is None)
        if nulled:
            raise ValidationError(f"Fields cannot be cleared: {', '.join(nulled)}")

        before = {field: _jsonable(getattr(service, field)) for field in updates}
        for field, value in updates.items():
            setattr(service, field, value)
        db.flush()
        after = {field: _jsonable(getattr(service, field)) for field in updates}

        diff = compute_diff(before, after)
        if not diff:
            db.rollback()
            return self._load(db, service_id)

        self.audit.append(
            db,
            action=AuditAction.UPDATED,
            actor=actor,
            service_id=service.id,
            old_values={k: v["before"] for k, v in diff.items()},
            new_values={k: v["after"] for k, v in diff.items()},
        )
        commit_or_raise(db, "edit_service")
        db.refresh(service)
        return service

    # -- status machine ---------------------------------------------------

    def _check_transition(self, db: Session, actor: Actor, current: ServiceStatus, target: ServiceStatus) -> None:
        if not self.permissions.allows(db, actor, Capability.CHANGE_STATUS):
            raise AuthorizationError("Role is not allowed to change service status")
        if target == ServiceStatus.ASSIGNED and not self.permissions.allows(db, actor, Capability.ASSIGN_TECHNICIAN):
            raise AuthorizationError("Only administrators can assign a technician")
        if target == current:
            raise ValidationError(f"Service is already {current.value}")
        if actor.is_admin:
            return
        if target not in NON_ADMIN_TRANSITIONS.get(current, set()):
            raise ValidationError(f"Cannot move service from {current.value} to {target.value}")

    def _transition_changes(self, service: Service, payload) -> Dict[str, Any]:
        """Field changes required by the target variant; raises ValidationError on missing data."""
        changes: Dict[str, Any] = {}

        if isinstance(payload, ProgressTransition):
            if payload.scheduled_date is not None:
                changes["scheduled_date"] = payload.scheduled_date
            if payload.technician_notes is not None:
                changes["technician_notes"] = payload.technician_notes

        elif isinstance(payload, AssignTransition):
            technician_id = payload.technician_id or service.technician_id
            if technician_id is None:
                raise ValidationError("technician_id is required to assign a service")
            changes["technician_id"] = technician_id
            if payload.scheduled_date is not None:
                changes["scheduled_date"] = payload.scheduled_date

        elif isinstance(payload, CompleteTransition):
            if _blank(payload.technician_notes):
                raise ValidationError("technician_notes is required to complete a service")
            if _blank(payload.work_performed):
                raise ValidationError("work_performed is required to complete a service")
            changes["technician_notes"] = payload.technician_notes.strip()
            changes["work_performed"] = payload.work_performed.strip()
            changes["completed_date"] = utcnow()
            for field in ("machine_notes", "used_parts", "cost"):
                value = getattr(payload, field)
                if value is not None:
                    changes[field] = value

        elif isinstance(payload, RepairFailedTransition):
            reason = (payload.repair_failure_reason or "").strip()
            min_chars = settings.repair_failure_reason_min_chars
            if len(reason) < min_chars:
                raise ValidationError(f"repair_failure_reason must be at least {min_chars} characters")
            changes["repair_failure_reason"] = reason
            changes["repair_failure_date"] = payload.repair_failure_date or local_today()
            if payload.replaced_parts_before_failure is not None:
                changes["replaced_parts_before_failure"] = payload.replaced_parts_before_failure
            if payload.technician_notes is not None:
                changes["technician_notes"] = payload.technician_notes

        elif isinstance(payload, CustomerRefusedTransition):
            if _blank(payload.customer_refusal_reason):
                raise ValidationError("customer_refusal_reason is required")
            changes["customer_refusal_reason"] = payload.customer_refusal_reason.strip()

        elif isinstance(payload, CancelTransition):
            if payload.cancellation_reason is not None:
                changes["cancellation_reason"] = payload.cancellation_reason

        return changes

    @datastore_operation("status_transition")
    def transition(self, db: Session, actor: Actor, service_id: int, payload) -> Tuple[Service, Optional[str]]:
        """
        Move a service to `payload.status`.

        Checks run in order: existence, ownership, role capability, transition
        graph, then the target variant's required fields.

        Returns:
            (updated service, notification error message or None)
        """
        service = self._load(db, service_id, lock=True)
        self.authorize_service_access(actor, service)

        old = ServiceStatus(service.status)
        new = ServiceStatus(payload.status)
        self._check_transition(db, actor, old, new)
        changes = self._transition_changes(service, payload)

        # Drop the payload of any other terminal state
        for status, fields in OUTCOME_FIELDS.items():
            if status == new:
                continue
            for field in fields:
                if getattr(service, field) is not None:
                    changes[field] = None

        before = {field: _jsonable(getattr(service, field)) for field in changes}
        service.status = new.value
        for field, value in changes.items():
            setattr(service, field, value)
        db.flush()

        changed = {
            field: _jsonable(getattr(service, field))
            for field in changes
            if _jsonable(getattr(service, field)) != before[field]
        }
        self.audit.append(
            db,
            action=AuditAction.STATUS_CHANGED,
            actor=actor,
            service_id=service.id,
            old_values={"status": old.value},
            new_values={"status": new.value, **changed},
        )
        commit_or_raise(db, "status_transition")
        db.refresh(service)
        logger.info(
            "status_changed",
            service_id=service.id,
            old_status=old.value,
            new_status=new.value,
            performed_by=actor.username,
            terminal=new in TERMINAL_STATUSES,
        )

        notification_error = dispatch_status_change(self.dispatcher, service, old, new)
        return service, notification_error
