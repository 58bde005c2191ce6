"""Experience and attribute-schema models.

Includes: Experience (SQL), AttributeSchema (SQL), ExperienceCreate (Pydantic),
SearchFilters (Pydantic), VisibilityScope (Pydantic).

The narrative embedding is not a column: it lives in the ChromaDB
"experiences" collection under the same id (see store/vector_index.py).
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

CATEGORIES: tuple[str, ...] = (
    "ufo_uap",
    "entities",
    "paranormal",
    "dreams",
    "nde_obe",
    "psychic",
    "synchronicity",
    "altered_states",
    "nature_phenomena",
    "other",
)

TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
Visibility = Literal["public", "private"]


class Experience(SQLModel, table=True):
    """A first-person account of an anomalous experience."""

    __tablename__ = "experience"

    id: str = SQLField(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = SQLField(index=True)
    category: str = SQLField(index=True)
    title: str = ""
    narrative: str = ""
    latitude: float | None = None
    longitude: float | None = None
    location_text: str = ""
    occurred_on: date | None = None
    time_of_day: str | None = None
    tags: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    attributes: dict = SQLField(default_factory=dict, sa_column=Column(JSON))
    locale: str = "en"
    visibility: str = SQLField(default="public", index=True)
    is_locked: bool = False
    search_text: str = ""  # lowercase title + narrative + tags + location
    embedded_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class AttributeSchema(SQLModel, table=True):
    """Declares which structured attribute keys exist and which are filterable."""

    __tablename__ = "attribute_schema"

    key: str = SQLField(primary_key=True)
    label: str = ""
    data_type: str = "enum"  # "enum" | "text" | "number" | "boolean"
    allowed_values: list[str] = SQLField(default_factory=list, sa_column=Column(JSON))
    is_filterable: bool = True
    category: str | None = None  # None = applies to all categories


# === Pydantic-only models (not persisted) ===


class ExperienceCreate(BaseModel):
    """Payload for submitting or updating an experience."""

    user_id: str = Field(min_length=1)
    category: str
    title: str = Field(default="", max_length=200)
    narrative: str = Field(min_length=1, max_length=20000)
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    location_text: str = ""
    occurred_on: date | None = None
    time_of_day: TimeOfDay | None = None
    tags: list[str] = Field(default_factory=list, max_length=30)
    attributes: dict[str, str] = Field(default_factory=dict)
    locale: str = "en"
    visibility: Visibility = "public"

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str) -> str:
        if value not in CATEGORIES:
            raise ValueError(f"Unknown category: {value}")
        return value

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in value:
            norm = tag.strip().lower()
            if norm and norm not in seen:
                seen.append(norm)
        return seen


class SearchFilters(BaseModel):
    """Structured filters. Applied as a hard gate before any scoring."""

    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)  # experience must carry all
    exclude_tags: list[str] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None
    location_text: str | None = None  # case-insensitive substring
    has_location: bool | None = None
    attributes_include: dict[str, list[str]] = Field(default_factory=dict)
    attributes_exclude: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def attribute_keys(self) -> set[str]:
        return set(self.attributes_include) | set(self.attributes_exclude)

    def matches(self, exp: Experience) -> bool:
        """True when the experience passes every filter."""
        if self.categories and exp.category not in self.categories:
            return False
        tags = {t.lower() for t in exp.tags}
        if self.tags and not all(t.lower() in tags for t in self.tags):
            return False
        if self.exclude_tags and any(t.lower() in tags for t in self.exclude_tags):
            return False
        if self.date_from or self.date_to:
            if exp.occurred_on is None:
                return False
            if self.date_from and exp.occurred_on < self.date_from:
                return False
            if self.date_to and exp.occurred_on > self.date_to:
                return False
        if self.location_text and self.location_text.lower() not in exp.location_text.lower():
            return False
        if self.has_location is not None and exp.has_location != self.has_location:
            return False
        attrs = {k: str(v).lower() for k, v in (exp.attributes or {}).items()}
        for key, values in self.attributes_include.items():
            if attrs.get(key) not in {v.lower() for v in values}:
                return False
        for key, values in self.attributes_exclude.items():
            if attrs.get(key) in {v.lower() for v in values}:
                return False
        return True


class VisibilityScope(BaseModel):
    """Who is looking. Public experiences plus the viewer's own are visible."""

    viewer_id: str | None = None


class TagSuggestionRequest(BaseModel):
    """Draft text of a submission; ``tags`` are the ones already chosen."""

    title: str = Field(default="", max_length=200)
    narrative: str = Field(default="", max_length=20000)
    locale: str = "en"
    tags: list[str] = Field(default_factory=list)


class TagSuggestion(BaseModel):
    tags: list[str] = Field(default_factory=list)
