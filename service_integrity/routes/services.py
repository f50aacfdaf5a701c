"""
Service lifecycle and delete routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_actor
from ..db import get_db
from ..models.models import ServiceStatus
from ..schemas.services import (
    DeleteConfirmationOut,
    HardDeleteRequest,
    ServiceCreate,
    ServiceEdit,
    ServiceOut,
    SoftDeleteRequest,
    StatusTransition,
    TransitionResponse,
)
from ..services.capabilities import Actor
from ..services.container import Components, get_components


router = APIRouter(prefix="/services", tags=["services"])


@router.post("", response_model=ServiceOut, status_code=201)
def create_service(
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    return components.lifecycle.create(db, actor, payload)


@router.get("", response_model=List[ServiceOut])
def list_services(
    status: Optional[ServiceStatus] = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    return components.lifecycle.list_services(db, actor, status=status, limit=limit)


@router.get("/{service_id}", response_model=ServiceOut)
def get_service(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    return components.lifecycle.get_service(db, actor, service_id)


@router.patch("/{service_id}", response_model=ServiceOut)
def edit_service(
    service_id: int,
    changes: ServiceEdit,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    return components.lifecycle.edit(db, actor, service_id, changes)


@router.put("/{service_id}/status", response_model=TransitionResponse)
def update_status(
    service_id: int,
    payload: StatusTransition,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    """
    Move a service to a new status.
    Body is discriminated on `status`; terminal states carry their own fields.
    """
    service, notification_error = components.lifecycle.transition(db, actor, service_id, payload)
    return TransitionResponse(
        service=ServiceOut.model_validate(service),
        notification_error=notification_error,
    )


@router.delete("/{service_id}/safe")
def soft_delete_service(
    service_id: int,
    payload: Optional[SoftDeleteRequest] = Body(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    reason = payload.reason if payload else None
    record = components.vault.soft_delete(db, actor, service_id, reason=reason)
    return {
        "success": True,
        "service_id": record.service_id,
        "message": "Service moved to deleted services and can be restored by an administrator",
    }


@router.get("/{service_id}/delete-confirmation", response_model=DeleteConfirmationOut)
def get_delete_confirmation(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    """Admin-only: reveal the value a permanent delete must be confirmed with."""
    return components.vault.confirmation_value(db, actor, service_id)


@router.delete("/{service_id}/safe-delete")
def hard_delete_service(
    service_id: int,
    payload: HardDeleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    components: Components = Depends(get_components),
):
    deleted = components.vault.hard_delete(db, actor, service_id, payload.confirmation)
    return {"success": True, "deleted_service": deleted}
