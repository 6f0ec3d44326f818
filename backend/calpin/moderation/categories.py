from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..models.help_request import UrgencyLevel


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    icon: str
    keywords: Tuple[str, ...] = field(default_factory=tuple)


# Order matters: on equal keyword counts the earlier category wins.
CATEGORIES: List[Category] = [
    Category(
        "academic", "Academic", "📚",
        (
            "homework", "study", "exam", "assignment", "tutor", "class", "calculus",
            "physics", "chemistry", "math", "biology", "cs", "essay", "paper",
            "project", "lab", "research", "thesis", "midterm", "final", "quiz",
            "lecture", "notes", "textbook", "course", "subject", "learning",
            "education", "academic", "application",
        ),
    ),
    Category(
        "technical", "Technical", "💻",
        (
            "code", "computer", "software", "debug", "programming", "website", "app",
            "laptop", "python", "java", "javascript", "git", "github", "error", "bug",
            "install", "setup", "configure", "tech", "device", "phone", "wifi",
            "network", "server", "database", "api", "terminal", "compile",
        ),
    ),
    Category(
        "social", "Social", "🤝",
        ("friend", "talk", "lonely", "meet", "hangout", "connect", "social", "party"),
    ),
    Category(
        "transportation", "Transportation", "🚗",
        ("ride", "drive", "car", "bus", "transport", "airport", "pickup", "drop", "carpool"),
    ),
    Category(
        "moving", "Moving/Carrying", "📦",
        ("move", "carry", "lift", "furniture", "heavy", "box", "load"),
    ),
    Category(
        "food", "Foodie", "🍕",
        ("food", "meal", "hungry", "eat", "restaurant", "lunch", "dinner", "cook"),
    ),
    Category(
        "health", "Health & Wellness", "🏥",
        ("sick", "doctor", "medicine", "health", "hospital", "injury", "wellness", "mental"),
    ),
    Category(
        "emergency", "Emergency", "🚨",
        ("urgent", "emergency", "asap", "help", "critical", "immediately", "now"),
    ),
    Category("other", "Other", "📌"),
]

OTHER = CATEGORIES[-1]
_BY_ID: Dict[str, Category] = {c.id: c for c in CATEGORIES}

DEFAULT_ESTIMATED_MINUTES = 30


def get_category(category_id: Optional[str]) -> Category:
    """Look up a taxonomy entry; unknown ids resolve to Other."""
    return _BY_ID.get((category_id or "").strip().lower(), OTHER)


def keyword_category(title: str, description: str) -> Category:
    text = f"{title or ''} {description or ''}".lower()
    best = OTHER
    best_hits = 0
    for category in CATEGORIES:
        if category is OTHER:
            continue
        hits = sum(1 for kw in category.keywords if kw in text)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def fallback_categorization(
    title: str, description: str, urgency: UrgencyLevel
) -> Dict[str, Any]:
    """Local categorizer used whenever the remote call is unavailable."""
    category = keyword_category(title, description)
    return {
        "category": category.id,
        "suggestedTitle": title,
        "estimatedTime": DEFAULT_ESTIMATED_MINUTES,
        "detectedUrgency": urgency.value,
        "tags": [category.name],
    }


def describe_for_prompt() -> str:
    return "\n".join(
        f"- {c.name} ({c.id}): For requests about {', '.join(c.keywords[:5])}"
        for c in CATEGORIES
    )
