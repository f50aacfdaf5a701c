"""
Admin routes: deleted services, user permission overrides, audit ledger and
security posture.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..config import settings
from ..db import get_db
from ..errors import NotFoundError
from ..schemas.admin import (
    AuditLogOut,
    AuditLogPage,
    AuditVerifyOut,
    DeletedServiceOut,
    PasswordStrengthOut,
    PasswordStrengthRequest,
    RestoreOut,
    UserPermissionOut,
    UserPermissionUpdate,
)
from ..services.capabilities import Actor, Role
from ..services.container import Components, get_components


router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require_roles(Role.ADMIN)


# =====================
# Deleted services
# =====================

@router.get("/deleted-services", response_model=List[DeletedServiceOut])
def list_deleted_services(
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    return components.vault.list_deleted(db)


@router.post("/deleted-services/{service_id}/restore", response_model=RestoreOut)
def restore_deleted_service(
    service_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    restored, _record = components.vault.restore(db, actor, service_id)
    return RestoreOut(original_service_id=service_id, service_id=restored.id)


# =====================
# User permissions
# =====================

@router.get("/user-permissions/{user_id}", response_model=UserPermissionOut)
def get_user_permissions(
    user_id: int,
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    return components.permissions.get_user_permissions(db, user_id)


@router.post("/user-permissions/{user_id}", response_model=UserPermissionOut)
def update_user_permissions(
    user_id: int,
    changes: UserPermissionUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    return components.permissions.update_user_permissions(db, actor, user_id, changes)


# =====================
# Audit ledger
# =====================

@router.get("/audit-logs", response_model=AuditLogPage)
def list_audit_logs(
    service: Optional[int] = None,
    limit: int = Query(default=settings.audit_page_size, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    """Global feed newest first, or one service's history oldest first when `service` is given."""
    limit = min(limit, settings.audit_page_max)
    if service is not None:
        entries = components.audit.query(db, service)[offset:offset + limit]
    else:
        entries = components.audit.query_all(db, limit=limit, offset=offset)
    return AuditLogPage(
        items=[AuditLogOut.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


@router.get("/audit-logs/{entry_id}/verify", response_model=AuditVerifyOut)
def verify_audit_log(
    entry_id: int,
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    entry = components.audit.get(db, entry_id)
    if entry is None:
        raise NotFoundError(f"Audit entry {entry_id} not found")
    return AuditVerifyOut(id=entry.id, valid=components.audit.verify(entry))


# =====================
# Security
# =====================

@router.get("/security/report")
def security_report(
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    return components.security_audit.generate_security_report()


@router.get("/security/events")
def security_events(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    events = components.security_audit.get_recent_security_events(hours)
    return {"items": [e.to_dict() for e in events], "total": len(events)}


@router.post("/security/password-strength", response_model=PasswordStrengthOut)
def password_strength(
    payload: PasswordStrengthRequest,
    _: Actor = Depends(admin_only),
    components: Components = Depends(get_components),
):
    return components.security_audit.assess_password_strength(payload.password)
