from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .help_request import CamelModel


@dataclass(frozen=True)
class Principal:
    """A caller whose credential has been verified and whose email domain is allowed."""

    id: str
    email: str
    name: str


class User(CamelModel):
    """Durable projection of a principal, upserted on every authentication."""

    id: str
    email: str
    name: str
    created_at: datetime
    last_seen_at: Optional[datetime] = None


class UserStats(CamelModel):
    requests_made: int = 0
    people_helped: int = 0
    accepted_helps: int = 0
    completed_requests: int = 0
    active_requests: int = 0
    community_points: int = 0
    join_date: Optional[datetime] = None
