import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from backend.calpin.models.help_request import NewHelpRequest, UrgencyLevel, utcnow
from backend.calpin.models.user import Principal
from backend.calpin.moderation.classifier import Classifier

AUTHOR = Principal(id="author-1", email="alice@berkeley.edu", name="Alice")
HELPER_B = Principal(id="helper-b", email="bob@berkeley.edu", name="Bob")
HELPER_C = Principal(id="helper-c", email="carol@berkeley.edu", name="Carol")
OUTSIDER = Principal(id="outsider", email="eve@example.com", name="Eve")


def create_payload(**overrides) -> Dict[str, Any]:
    """A valid /api/create body."""
    payload = {
        "caption": "Help moving a couch",
        "description": "Need a hand carrying a couch up two flights of stairs",
        "contact": "text 510-555-0100",
        "urgencyLevel": "Medium",
        "latitude": 37.8719,
        "longitude": -122.2585,
    }
    payload.update(overrides)
    return payload


def new_request(author: Principal = AUTHOR, **overrides) -> NewHelpRequest:
    values = {
        "title": "Help moving a couch",
        "description": "Need a hand carrying a couch up two flights of stairs",
        "latitude": 37.8719,
        "longitude": -122.2585,
        "contact": "text 510-555-0100",
        "urgency_level": UrgencyLevel.MEDIUM,
        "author_id": author.id,
        "author_name": author.name,
        "category": "moving",
        "category_icon": "📦",
        "category_name": "Moving/Carrying",
        "detected_urgency": UrgencyLevel.MEDIUM,
        "estimated_time": 30,
        "tags": ["Moving/Carrying"],
        "suggested_title": "Help moving a couch",
        "safety_check": "safe",
    }
    values.update(overrides)
    return NewHelpRequest(**values)


def hours_ago(hours: float):
    return utcnow() - timedelta(hours=hours)


class FakeClassifier(Classifier):
    """Deterministic classifier: fixed answers, an injected error, or a call
    that blocks until the test releases it (to exercise timeouts)."""

    def __init__(
        self,
        safety: Optional[Dict[str, Any]] = None,
        analysis: Optional[Dict[str, Any]] = None,
        improvement: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        block: bool = False,
    ):
        self.safety = safety if safety is not None else {"isSafe": True}
        self.analysis = analysis if analysis is not None else {
            "category": "moving",
            "suggestedTitle": "Help moving a couch",
            "estimatedTime": 45,
            "detectedUrgency": "Medium",
            "tags": ["moving", "furniture"],
        }
        self.improvement = improvement
        self.error = error
        self.block = block
        self.release = threading.Event()
        self.calls: List[str] = []

    def _answer(self, name: str, result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        self.calls.append(name)
        if self.block:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        if result is None:
            raise RuntimeError(f"no canned {name} answer")
        return dict(result)

    def check_safety(self, title: str, description: str) -> Dict[str, Any]:
        return self._answer("check_safety", self.safety)

    def categorize(self, title: str, description: str, urgency: str) -> Dict[str, Any]:
        return self._answer("categorize", self.analysis)

    def improve(self, title: str, description: str) -> Dict[str, Any]:
        return self._answer("improve", self.improvement)
