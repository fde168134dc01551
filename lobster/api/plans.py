from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lobster.api.deps import get_db, get_registry, require_api_user
from lobster.schemas import api as schemas

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=schemas.PlanListResponse)
def list_plans(
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    user_id: int = Depends(require_api_user),
):
    from lobster.services.plan_service import PlanService

    plans = PlanService(db, registry).list()
    return schemas.PlanListResponse(
        plans=[
            schemas.Plan(
                id=plan.id,
                name=plan.name,
                price=plan.price,
                ram=plan.ram,
                cpu=plan.cpu,
                storage=plan.storage,
                bandwidth=plan.bandwidth,
            )
            for plan in plans
        ]
    )
