from fastapi import APIRouter, Depends

from ...core.security import get_current_principal
from ...models.user import Principal, UserStats
from ...services.coordinator import RequestCoordinator
from ..deps import get_coordinator

router = APIRouter(prefix="/user", tags=["user"])


@router.get("/stats", response_model=UserStats)
def user_stats(
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.user_stats(principal)
