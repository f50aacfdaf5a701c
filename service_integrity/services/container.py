"""
Explicitly wired components, built once per app (or per test).
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ..config import Settings
from .audit import AuditLog
from .lifecycle import ServiceLifecycle
from .notifications import LogNotificationDispatcher, NotificationDispatcher
from .permissions import PermissionRegistry
from .security_audit import SecurityAuditService
from .vault import SoftDeleteVault


@dataclass
class Components:
    audit: AuditLog
    permissions: PermissionRegistry
    lifecycle: ServiceLifecycle
    vault: SoftDeleteVault
    security_audit: SecurityAuditService


def build_components(
    config: Optional[Settings] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    security_audit: Optional[SecurityAuditService] = None,
    integrity_secret: Optional[str] = None,
) -> Components:
    audit = AuditLog(integrity_secret=integrity_secret)
    permissions = PermissionRegistry(audit)
    return Components(
        audit=audit,
        permissions=permissions,
        lifecycle=ServiceLifecycle(audit, permissions, dispatcher or LogNotificationDispatcher()),
        vault=SoftDeleteVault(audit, permissions),
        security_audit=security_audit or SecurityAuditService(config),
    )


def get_components(request: Request) -> Components:
    return request.app.state.components
