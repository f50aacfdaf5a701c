from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserPermissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    can_delete_services: bool
    can_delete_clients: bool
    can_delete_appliances: bool
    can_view_all_services: bool
    can_manage_users: bool
    granted_by: Optional[int] = None
    granted_at: datetime
    notes: Optional[str] = None


class UserPermissionUpdate(BaseModel):
    """Partial update; omitted flags keep their stored (or role-default) value."""
    model_config = ConfigDict(extra="forbid")

    can_delete_services: Optional[bool] = None
    can_delete_clients: Optional[bool] = None
    can_delete_appliances: Optional[bool] = None
    can_view_all_services: Optional[bool] = None
    can_manage_users: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    service_id: Optional[int] = None
    action: str
    performed_by: int
    performed_by_username: str
    performed_by_role: str
    subject_user_id: Optional[int] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
    notes: Optional[str] = None


class AuditLogPage(BaseModel):
    items: List[AuditLogOut]
    limit: int
    offset: int


class AuditVerifyOut(BaseModel):
    id: int
    valid: bool


class DeletedServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    service_id: int
    original_service_data: dict
    deleted_by: int
    deleted_by_username: str
    deleted_by_role: str
    delete_reason: Optional[str] = None
    deleted_at: datetime
    can_be_restored: bool
    restored_by: Optional[int] = None
    restored_at: Optional[datetime] = None


class RestoreOut(BaseModel):
    success: bool = True
    original_service_id: int
    service_id: int


class PasswordStrengthRequest(BaseModel):
    password: str


class PasswordStrengthOut(BaseModel):
    score: int
    strength: str
    suggestions: List[str]
