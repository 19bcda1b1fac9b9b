"""
matchadmin/models/activity.py

Activity ledger models.

Event kinds map one-to-one onto counter columns:
- like  -> likes
- match -> matches
- swipe -> swipes
"""

from enum import Enum
from typing import List
from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    LIKE = "like"
    MATCH = "match"
    SWIPE = "swipe"

    @property
    def counter(self) -> str:
        return _COUNTERS[self]


_COUNTERS = {
    EventKind.LIKE: "likes",
    EventKind.MATCH: "matches",
    EventKind.SWIPE: "swipes",
}

MONTHS_PER_YEAR = 12


class ActivityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    year: int
    month: int = Field(ge=1, le=12)
    likes: int = Field(default=0, ge=0)
    matches: int = Field(default=0, ge=0)
    swipes: int = Field(default=0, ge=0)

    @property
    def key(self) -> str:
        return f"{self.account_id}:{self.year}-{self.month:02d}"


def _empty_series() -> List[int]:
    return [0] * MONTHS_PER_YEAR


class ActivityChart(BaseModel):
    """Twelve monthly values per counter, index 0 = January."""

    likes: List[int] = Field(default_factory=_empty_series, min_length=12, max_length=12)
    matches: List[int] = Field(default_factory=_empty_series, min_length=12, max_length=12)
    swipes: List[int] = Field(default_factory=_empty_series, min_length=12, max_length=12)
