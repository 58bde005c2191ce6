"""User similarity models.

Includes: UserSimilarityEntry (SQL cache row), UserSimilarity and Twin (Pydantic).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

MatchQuality = Literal["excellent", "very_good", "good", "fair"]


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Order a user pair so (a, b) and (b, a) share one cache row."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def match_quality(score: float) -> MatchQuality:
    if score >= 0.8:
        return "excellent"
    if score >= 0.6:
        return "very_good"
    if score >= 0.4:
        return "good"
    return "fair"


class UserSimilarityEntry(SQLModel, table=True):
    """Cached similarity for one canonical user pair. Replaced, never edited."""

    __tablename__ = "user_similarity_cache"

    user_a: str = SQLField(primary_key=True)
    user_b: str = SQLField(primary_key=True)
    score: float = 0.0
    jaccard: float = 0.0
    cosine: float = 0.0
    shared_categories: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    shared_category_count: int = 0
    same_location: bool = False
    computed_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))


class UserSimilarity(BaseModel):
    user_a: str
    user_b: str
    score: float = Field(ge=0.0, le=1.0)
    jaccard: float = 0.0
    cosine: float = 0.0
    shared_categories: list[str] = Field(default_factory=list)
    shared_category_count: int = 0
    same_location: bool = False
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = False

    @classmethod
    def from_entry(cls, entry: UserSimilarityEntry, cached: bool = True) -> UserSimilarity:
        return cls(
            user_a=entry.user_a,
            user_b=entry.user_b,
            score=entry.score,
            jaccard=entry.jaccard,
            cosine=entry.cosine,
            shared_categories=list(entry.shared_categories),
            shared_category_count=entry.shared_category_count,
            same_location=entry.same_location,
            computed_at=entry.computed_at,
            cached=cached,
        )

    def to_entry(self) -> UserSimilarityEntry:
        a, b = canonical_pair(self.user_a, self.user_b)
        return UserSimilarityEntry(
            user_a=a,
            user_b=b,
            score=self.score,
            jaccard=self.jaccard,
            cosine=self.cosine,
            shared_categories=list(self.shared_categories),
            shared_category_count=self.shared_category_count,
            same_location=self.same_location,
            computed_at=self.computed_at,
        )


class Twin(BaseModel):
    """A user ranked by similarity to the querying user."""

    user_id: str
    score: float
    match_quality: MatchQuality
    shared_categories: list[str] = Field(default_factory=list)
    shared_category_count: int = 0
    same_location: bool = False
