from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, status

from ...core.security import get_current_principal
from ...models.help_request import HelperEntry, HelperStatus, HelpRequest, HelpRequestView, OfferChange
from ...models.user import Principal
from ...services.coordinator import RequestCoordinator, parse_origin
from ..deps import body_field, get_coordinator

router = APIRouter(tags=["requests"])


@router.get("/fetch", response_model=List[HelpRequestView])
def fetch_requests(
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """Visible requests, newest first, with distance from (lat, lon) when given."""
    return coordinator.list_active(principal, parse_origin(lat, lon))


@router.post("/create", response_model=HelpRequest, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: Any = Body(None),
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.create_request(principal, payload)


@router.get("/requests/{request_id}", response_model=HelpRequestView)
def get_request(
    request_id: str,
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.get_request(principal, request_id, parse_origin(lat, lon))


@router.post("/requests/{request_id}/offer-help", response_model=HelpRequest)
def offer_help(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.offer_help(principal, request_id)


@router.post("/requests/{request_id}/accept-helper", response_model=OfferChange)
def accept_helper(
    request_id: str,
    payload: Any = Body(None),
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.accept_helper(principal, request_id, body_field(payload, "helperId"))


@router.post("/requests/{request_id}/reject-helper", response_model=OfferChange)
def reject_helper(
    request_id: str,
    payload: Any = Body(None),
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.reject_helper(principal, request_id, body_field(payload, "helperId"))


@router.api_route("/requests/{request_id}/status", methods=["PUT", "POST"], response_model=HelpRequest)
def update_status(
    request_id: str,
    payload: Any = Body(None),
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.set_status(principal, request_id, body_field(payload, "status"))


@router.get("/requests/{request_id}/helpers", response_model=List[HelperEntry])
def list_helpers(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.list_helpers(principal, request_id)


@router.get("/requests/{request_id}/helper-status", response_model=HelperStatus)
def helper_status(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return coordinator.helper_status(principal, request_id)
