import enum
from datetime import datetime, date, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    WAITING_PARTS = "waiting_parts"
    DEVICE_PARTS_REMOVED = "device_parts_removed"
    COMPLETED = "completed"
    REPAIR_FAILED = "repair_failed"
    CUSTOMER_REFUSED_REPAIR = "customer_refused_repair"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ServiceStatus.COMPLETED,
    ServiceStatus.REPAIR_FAILED,
    ServiceStatus.CUSTOMER_REFUSED_REPAIR,
    ServiceStatus.CANCELLED,
})


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="customer", index=True)  # admin|technician|business_partner|customer
    technician_id: Mapped[Optional[int]] = mapped_column(Integer)  # set for technician accounts
    company_name: Mapped[Optional[str]] = mapped_column(String(255))  # business partners
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    appliance_id: Mapped[int] = mapped_column(Integer, nullable=False)
    technician_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    business_partner_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)  # users.id of the partner
    partner_company_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default=ServiceStatus.PENDING.value, index=True)
    warranty_status: Mapped[str] = mapped_column(String(40), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    technician_notes: Mapped[Optional[str]] = mapped_column(Text)
    work_performed: Mapped[Optional[str]] = mapped_column(Text)
    machine_notes: Mapped[Optional[str]] = mapped_column(Text)
    used_parts: Mapped[Optional[str]] = mapped_column(Text)
    cost: Mapped[Optional[str]] = mapped_column(String(50))
    # Terminal payloads; only the one matching `status` is ever populated
    repair_failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    replaced_parts_before_failure: Mapped[Optional[str]] = mapped_column(Text)
    repair_failure_date: Mapped[Optional[date]] = mapped_column(Date)
    customer_refusal_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Ids are never reused, so a restored service always gets a fresh one
    __table_args__ = (
        Index("idx_services_status_technician", "status", "technician_id"),
        {"sqlite_autoincrement": True},
    )

    @property
    def is_completely_fixed(self) -> bool:
        return self.status == ServiceStatus.COMPLETED.value

    @property
    def repair_failed(self) -> bool:
        return self.status == ServiceStatus.REPAIR_FAILED.value

    @property
    def customer_refuses_repair(self) -> bool:
        return self.status == ServiceStatus.CUSTOMER_REFUSED_REPAIR.value


class ServiceAuditLog(Base):
    """Append-only ledger of mutating actions on services and permissions"""
    __tablename__ = "service_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)  # NULL for non-service entries
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    performed_by: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    performed_by_username: Mapped[str] = mapped_column(String(100), nullable=False)
    performed_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)  # target of permission changes
    old_values: Mapped[Optional[dict]] = mapped_column(JSON)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 over the canonical entry

    __table_args__ = (
        Index("idx_audit_service_time", "service_id", "timestamp"),
    )


@event.listens_for(ServiceAuditLog, "before_update")
def _audit_log_is_immutable(mapper, connection, target):
    raise RuntimeError("service_audit_logs rows are immutable")


@event.listens_for(ServiceAuditLog, "before_delete")
def _audit_log_is_append_only(mapper, connection, target):
    raise RuntimeError("service_audit_logs rows cannot be deleted")


class UserPermission(Base):
    __tablename__ = "user_permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    can_delete_services: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete_clients: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete_appliances: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_view_all_services: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_manage_users: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    granted_by: Mapped[Optional[int]] = mapped_column(Integer)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)


class DeletedService(Base):
    """Full snapshot of a soft-deleted service; outlives the services row"""
    __tablename__ = "deleted_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)  # original services.id
    original_service_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    deleted_by: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted_by_username: Mapped[str] = mapped_column(String(100), nullable=False)
    deleted_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    delete_reason: Mapped[Optional[str]] = mapped_column(Text)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512))
    deleted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    can_be_restored: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    restored_by: Mapped[Optional[int]] = mapped_column(Integer)
    restored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    restored_as_service_id: Mapped[Optional[int]] = mapped_column(Integer)
