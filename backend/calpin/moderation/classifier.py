from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import json
import logging
import re
import urllib.error
import urllib.request

from ..config import Settings, get_settings
from ..errors import ClassifierUnavailable
from .categories import describe_for_prompt

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

SAFETY_SYSTEM = """
You review help requests posted on a student support app.
Check for:
1. Personal identifying information (SSN, addresses, private data)
2. Substance-related requests (alcohol, drugs, prescriptions)
3. Academic dishonesty (cheating, selling answers)
4. Financial transactions (loans, money requests)
5. Illegal activities
6. Harassment or inappropriate content
Return ONLY one JSON object with:
- isSafe: boolean
- flaggedCategory: short snake_case category name or null
- reason: one-sentence explanation for the user, or null when safe
- severity: one of [low, medium, high] or null
No markdown, no extra text.
"""

CATEGORIZE_SYSTEM = """
You categorize help requests from UC Berkeley students.
Available categories:
{categories}
Return ONLY one JSON object with:
- category: the most appropriate category id from the list above
- suggestedTitle: a clearer, more concise title (or the original)
- estimatedTime: estimated minutes needed, as a number
- detectedUrgency: one of [Low, Medium, High, Urgent]
- tags: array of 2-4 short tags
No markdown, no extra text.
"""

IMPROVE_SYSTEM = """
You help a student write a clearer help request while keeping their intent and voice.
Make the title clear and specific (max 50 characters) and organize the description
(max 50 words), adding context helpers might need.
Return ONLY one JSON object with:
- improvedTitle: string
- improvedDescription: string
- suggestions: array of short tips
No markdown, no extra text.
"""


def _extract_json(text: str) -> str:
    m = re.search(r"\{[\s\S]*\}$", text.strip())
    if m:
        return m.group(0)
    m2 = re.search(r"\{[\s\S]*\}", text)
    if m2:
        return m2.group(0)
    return text


class Classifier(ABC):
    """Text-classification capability used by the moderation pipeline.

    Every method either returns a parsed JSON object or raises
    ClassifierUnavailable. Callers own the fallbacks.
    """

    @abstractmethod
    def check_safety(self, title: str, description: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def categorize(self, title: str, description: str, urgency: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def improve(self, title: str, description: str) -> Dict[str, Any]:
        ...


class OpenAIClassifier(Classifier):
    """Chat-completions JSON mode over plain HTTP. One attempt per call."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.api_key = (settings.OPENAI_API_KEY or "").strip()
        self.model = settings.MODEL_NAME
        self.temperature = float(settings.TEMPERATURE)
        self.max_tokens = int(settings.MAX_TOKENS)
        self.timeout_s = float(settings.CLASSIFIER_TIMEOUT_S)

    def _chat_json(self, system: str, user: str, max_tokens: Optional[int] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ClassifierUnavailable("OPENAI_API_KEY missing for classifier")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        req = urllib.request.Request(
            OPENAI_CHAT_URL,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as he:
            raise ClassifierUnavailable(f"HTTPError: {he.code}") from he
        except (urllib.error.URLError, TimeoutError, OSError, ValueError) as e:
            raise ClassifierUnavailable(f"classifier call failed: {e}") from e

        raw = ""
        choices = data.get("choices") if isinstance(data, dict) else None
        if choices and isinstance(choices[0], dict):
            raw = (choices[0].get("message") or {}).get("content") or ""
        if not raw.strip():
            raise ClassifierUnavailable("Classifier returned empty content")

        try:
            obj = json.loads(_extract_json(raw))
        except ValueError as e:
            raise ClassifierUnavailable(f"Classifier output was not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise ClassifierUnavailable("Classifier output was not a JSON object")
        return obj

    def check_safety(self, title: str, description: str) -> Dict[str, Any]:
        user = f"Title: {title}\nDescription: {description}"
        return self._chat_json(SAFETY_SYSTEM, user, max_tokens=200)

    def categorize(self, title: str, description: str, urgency: str) -> Dict[str, Any]:
        system = CATEGORIZE_SYSTEM.format(categories=describe_for_prompt())
        user = (
            f"Request Title: {title}\n"
            f"Description: {description}\n"
            f"User-Selected Urgency: {urgency}"
        )
        return self._chat_json(system, user)

    def improve(self, title: str, description: str) -> Dict[str, Any]:
        user = f"Original Title: {title}\nOriginal Description: {description}"
        return self._chat_json(IMPROVE_SYSTEM, user)


class OfflineClassifier(Classifier):
    """Used when no remote classifier is configured; every call degrades."""

    def _unavailable(self) -> Dict[str, Any]:
        raise ClassifierUnavailable("classifier disabled")

    def check_safety(self, title: str, description: str) -> Dict[str, Any]:
        return self._unavailable()

    def categorize(self, title: str, description: str, urgency: str) -> Dict[str, Any]:
        return self._unavailable()

    def improve(self, title: str, description: str) -> Dict[str, Any]:
        return self._unavailable()


def build_classifier(settings: Optional[Settings] = None) -> Classifier:
    settings = settings or get_settings()
    if settings.CLASSIFIER_ENABLED and (settings.OPENAI_API_KEY or "").strip():
        logger.info("Using OpenAI classifier model=%s", settings.MODEL_NAME)
        return OpenAIClassifier(settings)
    logger.info("Remote classifier disabled; moderation uses keyword fallbacks only")
    return OfflineClassifier()
