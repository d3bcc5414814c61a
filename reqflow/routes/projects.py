import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from reqflow.database import get_db
from reqflow.middleware.auth import get_current_user
from reqflow.middleware.tenant import get_org_id
from reqflow.schemas.budget import BudgetAvailabilityResponse
from reqflow.services import budget_service
from reqflow.services.directory_service import get_actor

router = APIRouter()


@router.get("/{project_id}/budget", response_model=BudgetAvailabilityResponse)
async def get_project_budget(
    project_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    """Budget minus spend minus in-flight reservations."""
    actor = await get_actor(db, org_id, current_user["user_id"])
    availability = await budget_service.available_budget(db, org_id, project_id, actor.user_id)
    return BudgetAvailabilityResponse(
        project_id=availability.project_id,
        is_unlimited=availability.is_unlimited,
        budget=availability.budget,
        spent_amount=availability.spent_amount,
        reserved_amount=availability.reserved_amount,
        available=availability.available,
    )
