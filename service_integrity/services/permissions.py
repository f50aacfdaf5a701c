"""
Per-user capability overrides layered on role defaults.
"""
from typing import Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import commit_or_raise, datastore_operation
from ..errors import AuthorizationError, NotFoundError
from ..models.models import User, UserPermission, utcnow
from ..schemas.admin import UserPermissionUpdate
from .audit import AuditLog, AuditAction
from .capabilities import (
    Actor,
    Capability,
    PERMISSION_FLAGS,
    Role,
    default_permission_flags,
    parse_role,
    role_allows,
)


logger = structlog.get_logger(__name__)


def _flags(row: UserPermission) -> Dict[str, bool]:
    return {flag: bool(getattr(row, flag)) for flag in PERMISSION_FLAGS}


class PermissionRegistry:
    def __init__(self, audit: AuditLog):
        self.audit = audit

    def _get_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _stored(self, db: Session, user_id: int, lock: bool = False) -> Optional[UserPermission]:
        query = db.query(UserPermission).filter(UserPermission.user_id == user_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    @datastore_operation("get_user_permissions")
    def get_user_permissions(self, db: Session, user_id: int) -> UserPermission:
        """
        Return the stored permission row, creating it from role defaults on first read.

        Once persisted the row overrides role defaults permanently.
        """
        user = self._get_user(db, user_id)
        row = self._stored(db, user_id)
        if row:
            return row

        row = UserPermission(
            user_id=user.id,
            notes="Role defaults",
            granted_at=utcnow(),
            **default_permission_flags(parse_role(user.role)),
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent request created the row first
            db.rollback()
            row = self._stored(db, user_id)
            if row is None:
                raise
            return row
        db.refresh(row)
        logger.info("user_permissions_defaulted", user_id=user_id, role=user.role)
        return row

    @datastore_operation("update_user_permissions")
    def update_user_permissions(
        self,
        db: Session,
        actor: Actor,
        user_id: int,
        changes: UserPermissionUpdate,
    ) -> UserPermission:
        """Upsert overrides for `user_id`, attributing the grant to `actor`."""
        if not self.allows(db, actor, Capability.MANAGE_USERS):
            raise AuthorizationError("Only administrators can change user permissions")
        user = self._get_user(db, user_id)

        row = self._stored(db, user_id, lock=True)
        if row is None:
            row = UserPermission(user_id=user.id, **default_permission_flags(parse_role(user.role)))
            db.add(row)
            old_values = None
        else:
            old_values = _flags(row)

        updates = changes.model_dump(exclude_unset=True)
        notes = updates.pop("notes", None)
        for flag, value in updates.items():
            if value is not None:
                setattr(row, flag, value)
        if notes is not None:
            row.notes = notes
        row.granted_by = actor.user_id
        row.granted_at = utcnow()
        db.flush()

        new_values = _flags(row)
        self.audit.append(
            db,
            action=AuditAction.USER_PERMISSIONS_UPDATED,
            actor=actor,
            subject_user_id=user.id,
            old_values=old_values,
            new_values=new_values,
            notes=f"Permissions for {user.username} updated by {actor.username}",
        )
        commit_or_raise(db, "update_user_permissions")
        db.refresh(row)
        logger.info("user_permissions_updated", user_id=user_id, granted_by=actor.user_id, flags=new_values)
        return row

    def allows(self, db: Session, actor: Actor, capability: Capability) -> bool:
        """Single capability lookup: admin bypass, then stored override, then role matrix."""
        if actor.role == Role.ADMIN:
            return True
        flag = next((f for f, cap in PERMISSION_FLAGS.items() if cap == capability), None)
        if flag is not None:
            row = self._stored(db, actor.user_id)
            if row is not None:
                return bool(getattr(row, flag))
        return role_allows(actor.role, capability)

    def can_user_delete_services(self, db: Session, user_id: int) -> bool:
        """Sole gate before any soft or hard delete. Read-only: never creates a row."""
        user = self._get_user(db, user_id)
        if parse_role(user.role) == Role.ADMIN:
            return True
        row = self._stored(db, user_id)
        if row is None:
            return role_allows(parse_role(user.role), Capability.DELETE_SERVICES)
        return bool(row.can_delete_services)
