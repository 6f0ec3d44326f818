"""Two-stage content moderation for new help requests.

Stage 1 is a keyword screen; a hit rejects the request outright. Stage 2 asks
the remote classifier for a contextual verdict. When stage 2 fails, times out
or returns garbage, the verdict is *safe*: a broken classifier must not block
legitimate posts, and the keyword screen has already run. Categorization is a
separate classifier call with a local keyword fallback, so it never fails.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import ClassifierUnavailable
from ..models.help_request import UrgencyLevel
from .categories import DEFAULT_ESTIMATED_MINUTES, fallback_categorization, get_category
from .classifier import Classifier
from .prefilter import DEFAULT_SAFETY_MESSAGE, pre_moderate

logger = logging.getLogger(__name__)

FALLBACK_SUGGESTIONS = [
    "Be specific about what you need",
    "Include location details",
    "Mention time constraints",
]


@dataclass
class ModerationVerdict:
    safe: bool
    reason: Optional[str] = None
    category: Optional[str] = None
    category_icon: Optional[str] = None
    category_name: Optional[str] = None
    urgency: Optional[UrgencyLevel] = None
    estimated_minutes: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    suggested_title: Optional[str] = None
    severity: Optional[str] = None

    @property
    def safety_check(self) -> str:
        return "safe" if self.safe else "flagged"

    def with_category(self, category_id: Optional[str]) -> "ModerationVerdict":
        # Category id, icon and name are always set together
        entry = get_category(category_id)
        self.category = (category_id or entry.id).strip().lower()
        self.category_icon = entry.icon
        self.category_name = entry.name
        return self


class ModerationPipeline:
    def __init__(self, classifier: Classifier, timeout_s: float = 8.0, max_workers: int = 4):
        self.classifier = classifier
        self.timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="classifier")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _bounded(self, fn: Callable[..., Dict[str, Any]], *args) -> Dict[str, Any]:
        """Run one classifier call with a hard deadline."""
        future = self._executor.submit(fn, *args)
        try:
            result = future.result(timeout=self.timeout_s)
        except FutureTimeout as e:
            future.cancel()
            raise ClassifierUnavailable(f"classifier timed out after {self.timeout_s}s") from e
        if not isinstance(result, dict):
            raise ClassifierUnavailable("classifier returned a non-object response")
        return result

    def evaluate(self, title: str, description: str, user_urgency: UrgencyLevel) -> ModerationVerdict:
        """Never raises; degrades to a conservative verdict instead."""
        hit = pre_moderate(title, description)
        if hit.flag:
            logger.info("Request rejected by keyword screen: category=%s", hit.category)
            return ModerationVerdict(safe=False, reason=hit.reason).with_category(hit.category)

        flagged = self._contextual_check(title, description)
        if flagged is not None:
            return flagged

        return self._categorize(title, description, user_urgency)

    def _contextual_check(self, title: str, description: str) -> Optional[ModerationVerdict]:
        try:
            result = self._bounded(self.classifier.check_safety, title, description)
        except Exception as e:
            # Fail open: the keyword screen has already passed
            logger.warning("Contextual safety check unavailable, failing open: %s", e)
            return None

        if result.get("isSafe", True) is not False:
            return None

        category = result.get("flaggedCategory") or "guidelines"
        verdict = ModerationVerdict(
            safe=False,
            reason=result.get("reason") or DEFAULT_SAFETY_MESSAGE,
            severity=result.get("severity") or "medium",
        )
        logger.info(
            "Request rejected by contextual check: category=%s severity=%s", category, verdict.severity
        )
        return verdict.with_category(str(category))

    def _categorize(self, title: str, description: str, urgency: UrgencyLevel) -> ModerationVerdict:
        try:
            analysis = self._bounded(self.classifier.categorize, title, description, urgency.value)
        except Exception as e:
            logger.warning("Categorization unavailable, using keyword fallback: %s", e)
            analysis = fallback_categorization(title, description, urgency)

        category = get_category(analysis.get("category"))
        try:
            detected = UrgencyLevel.parse(analysis.get("detectedUrgency") or urgency)
        except ValueError:
            detected = urgency
        try:
            minutes = int(analysis.get("estimatedTime") or DEFAULT_ESTIMATED_MINUTES)
        except (TypeError, ValueError):
            minutes = DEFAULT_ESTIMATED_MINUTES
        tags = analysis.get("tags")
        if not isinstance(tags, list) or not tags:
            tags = [category.name]

        verdict = ModerationVerdict(
            safe=True,
            urgency=detected,
            estimated_minutes=max(0, minutes),
            tags=[str(t) for t in tags][:4],
            suggested_title=str(analysis.get("suggestedTitle") or title),
        )
        return verdict.with_category(category.id)

    def improve(self, title: str, description: str) -> Dict[str, Any]:
        """Suggest a clearer title/description; falls back to the originals."""
        try:
            result = self._bounded(self.classifier.improve, title, description)
        except Exception as e:
            logger.warning("Request improvement unavailable: %s", e)
            result = {}
        suggestions = result.get("suggestions")
        if not isinstance(suggestions, list) or not suggestions:
            suggestions = list(FALLBACK_SUGGESTIONS)
        return {
            "improvedTitle": result.get("improvedTitle") or title,
            "improvedDescription": result.get("improvedDescription") or description,
            "suggestions": [str(s) for s in suggestions],
        }
