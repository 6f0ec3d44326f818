from typing import Any, Optional

from fastapi import Request

from ..services.coordinator import RequestCoordinator


def get_coordinator(request: Request) -> RequestCoordinator:
    return request.app.state.coordinator


def body_field(payload: Any, key: str) -> Optional[Any]:
    """Read one key from a JSON body that may not be an object at all."""
    if isinstance(payload, dict):
        return payload.get(key)
    return None
