import uuid
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

from reqflow.models.enums import RequisitionStatus


class RequisitionItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=3)
    unit_price: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)
    unit_of_measure: Optional[str] = Field(None, max_length=30)
    notes: Optional[str] = Field(None, max_length=1000)


class RequisitionCreate(BaseModel):
    project_id: uuid.UUID
    expense_account_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    items: List[RequisitionItemCreate] = Field(default_factory=list, max_length=200)


class RequisitionItemsReplace(BaseModel):
    items: List[RequisitionItemCreate] = Field(..., max_length=200)


class TransitionRequest(BaseModel):
    target_status: RequisitionStatus
    note: Optional[str] = Field(None, max_length=1000)


class RequisitionItemResponse(BaseModel):
    id: str
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    unit_of_measure: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class RequisitionResponse(BaseModel):
    id: str
    org_id: str
    project_id: str
    expense_account_id: Optional[str] = None
    requisition_number: str
    title: str
    description: Optional[str] = None
    status: str
    total_amount: Decimal
    submitted_by: str
    reviewed_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    items: List[RequisitionItemResponse] = []
    available_actions: List[str] = []
    created_at: str
    updated_at: str
    submitted_at: Optional[str] = None
    reviewed_at: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None

    model_config = {"from_attributes": True}


class TransitionResponse(BaseModel):
    transition_id: str
    from_status: str
    to_status: str
    requisition: RequisitionResponse


class CommentCreate(BaseModel):
    comment_text: str = Field(..., min_length=1, max_length=5000)
    is_internal: bool = False


class CommentResponse(BaseModel):
    id: str
    requisition_id: str
    user_id: str
    comment_text: str
    is_internal: bool
    created_at: str
