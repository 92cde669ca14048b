"""Request, response and record models shared by the API and the stores."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RelationshipType(str, Enum):
    """Labels a member can give to the person they are linked to."""
    PARENT = "parent"
    CHILD = "child"
    SPOUSE = "spouse"
    SIBLING = "sibling"
    UNCLE = "uncle"
    AUNT = "aunt"
    COUSIN = "cousin"
    NEPHEW = "nephew"
    NIECE = "niece"
    GRANDPARENT = "grandparent"
    GRANDCHILD = "grandchild"


# ============================================================================
# Records
# ============================================================================

class Member(BaseModel):
    """
    One person in a family tree.

    Rows coming back from a store are loosely typed (numeric ids, empty
    strings for "no parent"); identifiers are coerced to strings here so the
    graph code only ever sees ``str`` ids and ``None`` for a missing parent.
    """
    id: str
    family_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str | None = None
    picture_url: str | None = None
    biography: str | None = None
    parent_id: str | None = None
    created_at: datetime | None = None

    @field_validator("id", "family_id", "parent_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Family(BaseModel):
    """A named family owning a set of members."""
    id: str
    name: str
    created_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class FamilyStats(Family):
    """Family metadata merged with its tree statistics."""
    member_count: int = 0
    generation_count: int = 0


class Relationship(BaseModel):
    """Labelled edge recorded next to ``parent_id``. Never read back by the tree code."""
    member_id: str
    related_member_id: str
    relationship_type: RelationshipType


# ============================================================================
# Requests
# ============================================================================

def _blank_to_none(value: Any) -> Any:
    """Form fields left empty arrive as "" and are stored as null."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


class FamilyCreate(BaseModel):
    """Request body for creating a family."""
    name: str = Field(min_length=1, description="Display name of the family.")


class MemberCreate(BaseModel):
    """Request body for adding a member to a family."""
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    date_of_birth: str | None = None
    biography: str | None = None
    picture_url: str | None = None
    related_member_id: str | None = Field(
        default=None,
        description="Existing member the new person is linked to. Requires a relation.",
    )
    relation: RelationshipType | None = Field(
        default=None,
        description="How the new person relates to the chosen member. "
        "Only 'child' makes the chosen member the direct parent.",
    )

    @field_validator(
        "date_of_birth", "biography", "picture_url", "related_member_id", "relation", mode="before"
    )
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class MemberUpdate(BaseModel):
    """Partial update of a member. An explicit null ``parent_id`` makes the member a root."""
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    date_of_birth: str | None = None
    biography: str | None = None
    picture_url: str | None = None
    parent_id: str | None = None

    @field_validator("date_of_birth", "biography", "picture_url", "parent_id", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ChatRequest(BaseModel):
    """Question for the family assistant."""
    question: str
    family_id: str | None = None
    top_k: int = 5


# ============================================================================
# Responses
# ============================================================================

class MemberDetail(Member):
    """A member with their direct parent's name and a readable summary."""
    parent_name: str | None = None
    summary: str = ""


class TreeResponse(BaseModel):
    """Level-grouped members of a family, roots first."""
    family: Family
    levels: list[list[Member]]
    detached: list[Member] = []
    member_count: int
    generation_count: int


class SourceSnippet(BaseModel):
    """A retrieved piece of family information the answer was grounded on."""
    content: str
    similarity: float | None = None
    metadata: dict[str, Any] = {}


class ChatResponse(BaseModel):
    """Answer from the family assistant."""
    answer: str
    sources: list[SourceSnippet] = []
