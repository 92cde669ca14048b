"""Persistence for families, members and relationship labels.

Two interchangeable backends share one contract: a process-local in-memory
store (development and tests) and a Supabase-backed store. The tree code never
talks to a store directly; the API fetches a member snapshot and hands it over.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import numpy as np

from family_models import Family, Member, Relationship

logger = logging.getLogger("familytree.store")

CREATOR_FIRST_NAME = "Family"
CREATOR_LAST_NAME = "Creator"


class StoreError(Exception):
    """A backend call failed."""


class FamilyNotFoundError(StoreError):
    """No family with the requested id."""

    def __init__(self, family_id: str):
        super().__init__(f"Family not found: {family_id}")
        self.family_id = family_id


class MemberNotFoundError(StoreError):
    """No member with the requested id."""

    def __init__(self, member_id: str):
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either is empty or zero."""
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    return float(np.dot(va, vb) / norm) if norm else 0.0


class FamilyStore(ABC):
    """Contract every backend implements."""

    # ------------------------------------------------------------------ families

    @abstractmethod
    def list_families(self) -> list[Family]:
        """All families, oldest first."""

    @abstractmethod
    def get_family(self, family_id: str) -> Family:
        """Return the family or raise ``FamilyNotFoundError``."""

    @abstractmethod
    def delete_family(self, family_id: str) -> None:
        """Delete a family with its members and relationships."""

    @abstractmethod
    def _insert_family(self, name: str) -> Family:
        ...

    def create_family(self, name: str) -> tuple[Family, Member]:
        """
        Create a family together with its first member.

        If the first member cannot be stored the family is removed again, so a
        family never exists without at least its creator.
        """
        family = self._insert_family(name)
        try:
            creator = self.add_member(family.id, {
                "first_name": CREATOR_FIRST_NAME,
                "last_name": CREATOR_LAST_NAME,
            })
        except StoreError:
            logger.error(f"Could not add creator to family {family.id}, removing family")
            self.delete_family(family.id)
            raise
        logger.info(f"Created family {family.id} ('{name}')")
        return family, creator

    # ------------------------------------------------------------------- members

    @abstractmethod
    def list_members(self, family_id: str) -> list[Member]:
        """Snapshot of a family's members in insertion order."""

    @abstractmethod
    def get_member(self, member_id: str) -> Member:
        """Return the member or raise ``MemberNotFoundError``."""

    @abstractmethod
    def add_member(self, family_id: str, fields: dict[str, Any]) -> Member:
        """Insert a member into an existing family."""

    @abstractmethod
    def update_member(self, member_id: str, changes: dict[str, Any]) -> Member:
        """Apply a partial update. ``parent_id`` may point anywhere, or be None."""

    # ------------------------------------------------------------- relationships

    @abstractmethod
    def _insert_relationship(self, relationship: Relationship) -> None:
        ...

    def record_relationship(self, relationship: Relationship) -> bool:
        """Store a relationship label. Failures are logged and reported as False."""
        try:
            self._insert_relationship(relationship)
        except StoreError as e:
            logger.warning(f"Relationship {relationship.relationship_type.value} "
                           f"{relationship.member_id} -> {relationship.related_member_id} not stored: {e}")
            return False
        return True

    # ---------------------------------------------------------------- embeddings

    @abstractmethod
    def match_embeddings(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        family_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Rows ``{content, similarity, metadata}`` most similar to the query."""


# ============================================================================
# In-memory backend
# ============================================================================

class InMemoryFamilyStore(FamilyStore):
    """Dict-backed store. Thread safe; contents are lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._families: dict[str, Family] = {}
        self._members: dict[str, Member] = {}
        self._relationships: list[Relationship] = []
        self._embeddings: list[dict[str, Any]] = []

    def list_families(self) -> list[Family]:
        with self._lock:
            families = list(self._families.values())
        return sorted(families, key=lambda f: f.created_at or _now())

    def get_family(self, family_id: str) -> Family:
        with self._lock:
            family = self._families.get(family_id)
        if family is None:
            raise FamilyNotFoundError(family_id)
        return family

    def _insert_family(self, name: str) -> Family:
        family = Family(id=str(uuid.uuid4()), name=name, created_at=_now())
        with self._lock:
            self._families[family.id] = family
        return family

    def delete_family(self, family_id: str) -> None:
        with self._lock:
            if self._families.pop(family_id, None) is None:
                raise FamilyNotFoundError(family_id)
            removed = {mid for mid, m in self._members.items() if m.family_id == family_id}
            for member_id in removed:
                del self._members[member_id]
            self._relationships = [
                r for r in self._relationships
                if r.member_id not in removed and r.related_member_id not in removed
            ]
            self._embeddings = [e for e in self._embeddings if e["family_id"] != family_id]
        logger.info(f"Deleted family {family_id} and {len(removed)} member(s)")

    def list_members(self, family_id: str) -> list[Member]:
        with self._lock:
            return [m for m in self._members.values() if m.family_id == family_id]

    def get_member(self, member_id: str) -> Member:
        with self._lock:
            member = self._members.get(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    def add_member(self, family_id: str, fields: dict[str, Any]) -> Member:
        self.get_family(family_id)
        member = Member(
            **fields,
            id=str(uuid.uuid4()),
            family_id=family_id,
            created_at=_now(),
        )
        with self._lock:
            self._members[member.id] = member
        return member

    def update_member(self, member_id: str, changes: dict[str, Any]) -> Member:
        with self._lock:
            current = self._members.get(member_id)
            if current is None:
                raise MemberNotFoundError(member_id)
            updated = Member.model_validate({**current.model_dump(), **changes})
            self._members[member_id] = updated
        return updated

    def _insert_relationship(self, relationship: Relationship) -> None:
        with self._lock:
            self._relationships.append(relationship)

    def relationships_for(self, member_id: str) -> list[Relationship]:
        with self._lock:
            return [r for r in self._relationships if r.member_id == member_id]

    def add_embedding(
        self,
        family_id: str,
        content: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Store one retrievable chunk of family information."""
        with self._lock:
            self._embeddings.append({
                "family_id": family_id,
                "content": content,
                "embedding": list(embedding),
                "metadata": metadata or {},
            })

    def match_embeddings(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        family_id: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [e for e in self._embeddings if family_id is None or e["family_id"] == family_id]

        scored = []
        for row in rows:
            similarity = cosine_similarity(query_embedding, row["embedding"])
            if similarity > match_threshold:
                scored.append({
                    "content": row["content"],
                    "similarity": similarity,
                    "metadata": row["metadata"],
                })
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:match_count]


# ============================================================================
# Supabase backend
# ============================================================================

class SupabaseFamilyStore(FamilyStore):
    """Store backed by the ``families``, ``members`` and ``relationships`` tables."""

    FAMILY_COLUMNS = "id,name,created_at"
    MEMBER_COLUMNS = "id,family_id,first_name,last_name,date_of_birth,picture_url,biography,parent_id,created_at"

    def __init__(self, url: str, key: str, client=None):
        if client is None:
            from supabase import create_client
            client = create_client(url, key)
        self._client = client

    def _execute(self, action: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise StoreError(f"{action} failed: {e}") from e

    def list_families(self) -> list[Family]:
        response = self._execute(
            "list families",
            self._client.table("families").select(self.FAMILY_COLUMNS).order("created_at"),
        )
        return [Family.model_validate(row) for row in response.data or []]

    def get_family(self, family_id: str) -> Family:
        response = self._execute(
            "get family",
            self._client.table("families").select(self.FAMILY_COLUMNS).eq("id", family_id).limit(1),
        )
        if not response.data:
            raise FamilyNotFoundError(family_id)
        return Family.model_validate(response.data[0])

    def _insert_family(self, name: str) -> Family:
        response = self._execute(
            "create family",
            self._client.table("families").insert({"name": name}),
        )
        if not response.data:
            raise StoreError("create family returned no row")
        return Family.model_validate(response.data[0])

    def delete_family(self, family_id: str) -> None:
        self.get_family(family_id)
        # members and relationships are removed by ON DELETE CASCADE
        self._execute("delete family", self._client.table("families").delete().eq("id", family_id))
        logger.info(f"Deleted family {family_id}")

    def list_members(self, family_id: str) -> list[Member]:
        response = self._execute(
            "list members",
            self._client.table("members").select(self.MEMBER_COLUMNS).eq("family_id", family_id).order("created_at"),
        )
        return [Member.model_validate(row) for row in response.data or []]

    def get_member(self, member_id: str) -> Member:
        response = self._execute(
            "get member",
            self._client.table("members").select(self.MEMBER_COLUMNS).eq("id", member_id).limit(1),
        )
        if not response.data:
            raise MemberNotFoundError(member_id)
        return Member.model_validate(response.data[0])

    def add_member(self, family_id: str, fields: dict[str, Any]) -> Member:
        self.get_family(family_id)
        response = self._execute(
            "add member",
            self._client.table("members").insert({**fields, "family_id": family_id}),
        )
        if not response.data:
            raise StoreError("add member returned no row")
        return Member.model_validate(response.data[0])

    def update_member(self, member_id: str, changes: dict[str, Any]) -> Member:
        response = self._execute(
            "update member",
            self._client.table("members").update(changes).eq("id", member_id),
        )
        if not response.data:
            raise MemberNotFoundError(member_id)
        return Member.model_validate(response.data[0])

    def _insert_relationship(self, relationship: Relationship) -> None:
        self._execute(
            "record relationship",
            self._client.table("relationships").insert(relationship.model_dump(mode="json")),
        )

    def match_embeddings(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        family_id: str | None = None,
    ) -> list[dict[str, Any]]:
        response = self._execute(
            "match embeddings",
            self._client.rpc("match_family_embeddings", {
                "query_embedding": query_embedding,
                "match_threshold": match_threshold,
                "match_count": match_count,
                "family": family_id,
            }),
        )
        return response.data or []


def create_store(settings) -> FamilyStore:
    """Build the store selected by ``settings.store_backend``."""
    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise StoreError("STORE_BACKEND=supabase needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        logger.info(f"Using Supabase store at {settings.supabase_url}")
        return SupabaseFamilyStore(settings.supabase_url, settings.supabase_key)

    if settings.store_backend != "memory":
        logger.warning(f"Unknown STORE_BACKEND '{settings.store_backend}', using in-memory store")
    logger.info("Using in-memory store")
    return InMemoryFamilyStore()
