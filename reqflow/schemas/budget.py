from decimal import Decimal
from typing import Optional
from pydantic import BaseModel


class BudgetAvailabilityResponse(BaseModel):
    project_id: str
    is_unlimited: bool
    budget: Optional[Decimal] = None
    spent_amount: Decimal
    reserved_amount: Decimal
    available: Optional[Decimal] = None
