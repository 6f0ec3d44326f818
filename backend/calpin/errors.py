"""Domain errors raised by the help-request engine.

Each error knows the HTTP status it maps to and the JSON body the API returns,
so routers never have to translate them by hand.
"""

from typing import Any, Dict, Optional


class CalPinError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.detail}


class ValidationError(CalPinError):
    """Missing or malformed input. Never persisted."""

    status_code = 400

    def __init__(self, fields: Dict[str, str]):
        self.fields = dict(fields)
        names = ", ".join(sorted(self.fields))
        super().__init__(f"Invalid or missing fields: {names}")

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.detail, "fields": self.fields}


class ModerationRejected(CalPinError):
    """Content failed the safety check; the request is not created."""

    status_code = 400

    def __init__(self, reason: str, category: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.category = category

    def to_payload(self) -> Dict[str, Any]:
        return {
            "detail": self.reason,
            "flagged": True,
            "reason": self.reason,
            "category": self.category,
        }


class Forbidden(CalPinError):
    status_code = 403


class SelfOfferForbidden(Forbidden):
    """A principal offering help on their own request. Reported as a bad
    request to match the offer endpoint's contract."""

    status_code = 400


class NotFound(CalPinError):
    status_code = 404


class AlreadyOffered(CalPinError):
    status_code = 400


class InvalidTransition(CalPinError):
    """A status change that is not reachable from the current state."""

    status_code = 409

    def __init__(self, current: str, requested: str, subject: str = "request"):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {subject} from '{current}' to '{requested}'")

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.detail, "current": self.current, "requested": self.requested}


class StoreUnavailable(CalPinError):
    """The primary store could not be reached before any work was done."""

    status_code = 503


class StoreError(CalPinError):
    """A store operation failed after it started; nothing was committed."""

    status_code = 500


class ClassifierUnavailable(CalPinError):
    """The remote classifier failed, timed out or answered with garbage."""

    status_code = 502
