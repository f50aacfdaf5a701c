from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..models.models import ServiceStatus


class ServiceSnapshot(BaseModel):
    """Every persisted column of a service; the soft-delete vault stores this verbatim."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    client_id: int
    appliance_id: int
    technician_id: Optional[int] = None
    business_partner_id: Optional[int] = None
    partner_company_name: Optional[str] = None
    description: str
    status: ServiceStatus
    warranty_status: str
    created_at: datetime
    scheduled_date: Optional[date] = None
    completed_date: Optional[datetime] = None
    technician_notes: Optional[str] = None
    work_performed: Optional[str] = None
    machine_notes: Optional[str] = None
    used_parts: Optional[str] = None
    cost: Optional[str] = None
    repair_failure_reason: Optional[str] = None
    replaced_parts_before_failure: Optional[str] = None
    repair_failure_date: Optional[date] = None
    customer_refusal_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None


class ServiceOut(ServiceSnapshot):
    id: int
    # Derived from status, never stored
    is_completely_fixed: bool
    repair_failed: bool
    customer_refuses_repair: bool


class ServiceCreate(BaseModel):
    client_id: int = Field(gt=0)
    appliance_id: int = Field(gt=0)
    description: str = Field(min_length=5, max_length=1000)
    warranty_status: Literal["u garanciji", "van garancije"]
    technician_id: Optional[int] = Field(default=None, gt=0)
    scheduled_date: Optional[date] = None
    partner_company_name: Optional[str] = Field(default=None, max_length=100)


class ServiceEdit(BaseModel):
    """Field edits outside the status machine; which ones a role may send is enforced by the lifecycle."""
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=5, max_length=1000)
    warranty_status: Optional[Literal["u garanciji", "van garancije"]] = None
    scheduled_date: Optional[date] = None
    partner_company_name: Optional[str] = Field(default=None, max_length=100)
    technician_notes: Optional[str] = Field(default=None, max_length=1000)
    machine_notes: Optional[str] = Field(default=None, max_length=500)
    used_parts: Optional[str] = Field(default=None, max_length=1000)
    cost: Optional[str] = Field(default=None, max_length=50)
    client_id: Optional[int] = Field(default=None, gt=0)
    appliance_id: Optional[int] = Field(default=None, gt=0)


# Status transitions: one variant per target state family, discriminated on `status`.
# Required-field rules live in ServiceLifecycle so they raise domain ValidationError.

class ProgressTransition(BaseModel):
    status: Literal["pending", "scheduled", "in_progress", "waiting_parts", "device_parts_removed"]
    scheduled_date: Optional[date] = None
    technician_notes: Optional[str] = None


class AssignTransition(BaseModel):
    status: Literal["assigned"]
    technician_id: Optional[int] = None
    scheduled_date: Optional[date] = None


class CompleteTransition(BaseModel):
    status: Literal["completed"]
    technician_notes: Optional[str] = None
    work_performed: Optional[str] = None
    machine_notes: Optional[str] = None
    used_parts: Optional[str] = None
    cost: Optional[str] = None


class RepairFailedTransition(BaseModel):
    status: Literal["repair_failed"]
    repair_failure_reason: Optional[str] = None
    replaced_parts_before_failure: Optional[str] = None
    repair_failure_date: Optional[date] = None
    technician_notes: Optional[str] = None


class CustomerRefusedTransition(BaseModel):
    status: Literal["customer_refused_repair"]
    customer_refusal_reason: Optional[str] = None


class CancelTransition(BaseModel):
    status: Literal["cancelled"]
    cancellation_reason: Optional[str] = None


StatusTransition = Annotated[
    Union[
        ProgressTransition,
        AssignTransition,
        CompleteTransition,
        RepairFailedTransition,
        CustomerRefusedTransition,
        CancelTransition,
    ],
    Field(discriminator="status"),
]


class TransitionResponse(BaseModel):
    service: ServiceOut
    notification_error: Optional[str] = None


class SoftDeleteRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class HardDeleteRequest(BaseModel):
    confirmation: str


class DeleteConfirmationOut(BaseModel):
    service_id: int
    field: str
    expected_value: str
