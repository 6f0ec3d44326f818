from typing import Any, List

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from ...core.security import get_current_principal
from ...models.user import Principal
from ...services.coordinator import RequestCoordinator
from ..deps import get_coordinator

router = APIRouter(tags=["ai"])


class CategoryCount(BaseModel):
    id: str
    name: str
    icon: str
    count: int


@router.get("/ai/categories", response_model=List[CategoryCount])
def list_categories(
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.categories_with_counts()


@router.post("/rephrase")
def rephrase_request(
    payload: Any = Body(None),
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """Suggest a clearer title and description. Falls back to the originals."""
    return coordinator.improve(payload)
