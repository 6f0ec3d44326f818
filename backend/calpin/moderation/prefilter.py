from dataclasses import dataclass
from typing import Dict, List, Optional

# Checked in this order; the first hit wins.
SENSITIVE_KEYWORDS: Dict[str, List[str]] = {
    "personal_info": [
        "ssn", "social security", "credit card", "bank account", "password",
        "address", "phone number",
    ],
    "romantic": ["hook up", "sex"],
    "substances": ["drugs", "adderall", "xanax", "pills"],
    "academic_dishonesty": [
        "exam answers", "do my homework", "write my paper", "take my exam",
        "cheat", "plagiarize",
    ],
    "financial": ["loan", "borrow money", "lend money", "pay me", "venmo", "cash app"],
    "illegal": ["fake id", "steal", "break in", "hack"],
}

DEFAULT_SAFETY_MESSAGE = "This request violates our community guidelines."

SAFETY_MESSAGES: Dict[str, str] = {
    "personal_info": (
        "For your safety, please don't share personal information like "
        "addresses, SSN, or bank details."
    ),
    "romantic": "Dating and romantic requests aren't allowed on CalPin.",
    "substances": (
        "Requests involving alcohol, drugs, or prescriptions aren't allowed. "
        "Contact Tang Center for health needs."
    ),
    "academic_dishonesty": (
        "Academic integrity is important. We can't help with cheating. "
        "Visit the Student Learning Center for study help."
    ),
    "mental_health_crisis": (
        "This sounds serious. Please contact CAPS (510-642-9494) or "
        "Crisis Line (855-817-5667) for professional help."
    ),
    "financial": (
        "For safety reasons, we don't allow money lending or financial "
        "transactions between students."
    ),
    "illegal": "This request appears to involve illegal activity and cannot be posted.",
}


@dataclass
class SafetyVerdict:
    flag: bool
    category: Optional[str] = None
    reason: Optional[str] = None
    keyword: Optional[str] = None


def safety_message(category: Optional[str]) -> str:
    return SAFETY_MESSAGES.get(category or "", DEFAULT_SAFETY_MESSAGE)


def pre_moderate(title: str, description: str) -> SafetyVerdict:
    """Deterministic keyword screen over title and description."""
    tl = f"{title or ''} {description or ''}".lower()
    for category, keywords in SENSITIVE_KEYWORDS.items():
        for keyword in keywords:
            if keyword in tl:
                return SafetyVerdict(True, category, safety_message(category), keyword)
    return SafetyVerdict(False)
