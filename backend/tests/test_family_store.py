"""Tests for the family stores."""

import os
import sys
from types import SimpleNamespace

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from family_models import Relationship, RelationshipType
from family_store import (
    CREATOR_FIRST_NAME,
    CREATOR_LAST_NAME,
    FamilyNotFoundError,
    InMemoryFamilyStore,
    MemberNotFoundError,
    StoreError,
    SupabaseFamilyStore,
    cosine_similarity,
    create_store,
)


@pytest.fixture
def store():
    return InMemoryFamilyStore()


@pytest.fixture
def family(store):
    family, _ = store.create_family("Lovelace")
    return family


class TestFamilies:
    """Tests for family creation, lookup and deletion."""

    def test_create_family_adds_creator(self, store):
        """A new family starts with its creator as the only member."""
        family, creator = store.create_family("Byron")
        assert family.name == "Byron"
        assert creator.family_id == family.id
        assert creator.first_name == CREATOR_FIRST_NAME
        assert creator.last_name == CREATOR_LAST_NAME
        assert creator.parent_id is None
        assert store.list_members(family.id) == [creator]

    def test_get_family_not_found(self, store):
        """Unknown ids raise FamilyNotFoundError."""
        with pytest.raises(FamilyNotFoundError):
            store.get_family("missing")

    def test_not_found_is_store_error(self, store):
        """Not-found errors can be handled as generic store errors."""
        with pytest.raises(StoreError):
            store.get_family("missing")

    def test_list_families_oldest_first(self, store):
        """Families are listed in creation order."""
        first, _ = store.create_family("First")
        second, _ = store.create_family("Second")
        assert [f.id for f in store.list_families()] == [first.id, second.id]

    def test_delete_family_cascades(self, store, family):
        """Deleting a family removes its members, relationships and embeddings."""
        child = store.add_member(family.id, {"first_name": "Ada", "last_name": "King"})
        other, _ = store.create_family("Other")
        store.record_relationship(Relationship(
            member_id=child.id,
            related_member_id=store.list_members(family.id)[0].id,
            relationship_type=RelationshipType.CHILD,
        ))
        store.add_embedding(family.id, "Member: Ada King", [1.0, 0.0])

        store.delete_family(family.id)

        with pytest.raises(FamilyNotFoundError):
            store.get_family(family.id)
        with pytest.raises(MemberNotFoundError):
            store.get_member(child.id)
        assert store.relationships_for(child.id) == []
        assert store.match_embeddings([1.0, 0.0], 0.2, 5) == []
        assert len(store.list_members(other.id)) == 1

    def test_delete_unknown_family(self, store):
        """Deleting a missing family raises."""
        with pytest.raises(FamilyNotFoundError):
            store.delete_family("missing")

    def test_creator_failure_removes_family(self, store, monkeypatch):
        """If the creator cannot be stored, the family is rolled back."""
        def fail(family_id, fields):
            raise StoreError("insert failed")

        monkeypatch.setattr(store, "add_member", fail)
        with pytest.raises(StoreError):
            store.create_family("Doomed")
        assert store.list_families() == []


class TestMembers:
    """Tests for adding and editing members."""

    def test_add_member(self, store, family):
        """Members are stored with their family and an id."""
        member = store.add_member(family.id, {
            "first_name": "Ada",
            "last_name": "King",
            "date_of_birth": "1815-12-10",
        })
        assert member.id
        assert member.family_id == family.id
        assert store.get_member(member.id) == member

    def test_add_member_unknown_family(self, store):
        """Members cannot be added to a missing family."""
        with pytest.raises(FamilyNotFoundError):
            store.add_member("missing", {"first_name": "Ada", "last_name": "King"})

    def test_list_members_in_insertion_order(self, store, family):
        """Snapshots keep insertion order."""
        a = store.add_member(family.id, {"first_name": "A", "last_name": "X"})
        b = store.add_member(family.id, {"first_name": "B", "last_name": "X"})
        assert [m.id for m in store.list_members(family.id)][-2:] == [a.id, b.id]

    def test_update_parent_freely(self, store, family):
        """A parent can be set, pointed at oneself, and cleared."""
        a = store.add_member(family.id, {"first_name": "A", "last_name": "X"})
        b = store.add_member(family.id, {"first_name": "B", "last_name": "X"})

        assert store.update_member(b.id, {"parent_id": a.id}).parent_id == a.id
        assert store.update_member(b.id, {"parent_id": b.id}).parent_id == b.id
        assert store.update_member(b.id, {"parent_id": None}).parent_id is None

    def test_update_keeps_other_fields(self, store, family):
        """Partial updates leave untouched fields alone."""
        a = store.add_member(family.id, {"first_name": "A", "last_name": "X", "biography": "Bio"})
        updated = store.update_member(a.id, {"first_name": "Anne"})
        assert updated.first_name == "Anne"
        assert updated.biography == "Bio"

    def test_update_unknown_member(self, store):
        """Updating a missing member raises."""
        with pytest.raises(MemberNotFoundError):
            store.update_member("missing", {"first_name": "Z"})


class TestRelationships:
    """Tests for best-effort relationship labels."""

    def test_record_relationship(self, store, family):
        """Recorded labels can be read back for the member."""
        rel = Relationship(member_id="m1", related_member_id="m2", relationship_type=RelationshipType.SPOUSE)
        assert store.record_relationship(rel) is True
        assert store.relationships_for("m1") == [rel]

    def test_record_relationship_failure_is_swallowed(self, store, monkeypatch):
        """A failing insert is reported as False instead of raising."""
        def fail(relationship):
            raise StoreError("table missing")

        monkeypatch.setattr(store, "_insert_relationship", fail)
        rel = Relationship(member_id="m1", related_member_id="m2", relationship_type=RelationshipType.COUSIN)
        assert store.record_relationship(rel) is False


class TestEmbeddings:
    """Tests for in-memory similarity search."""

    def test_cosine_similarity(self):
        """Parallel vectors score 1, orthogonal 0, degenerate 0."""
        assert cosine_similarity([1.0, 0.0], [2.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_cosine_similarity_mismatched_lengths(self):
        """Vectors of different sizes never match."""
        assert cosine_similarity([1.0, 0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_cosine_similarity_returns_float(self):
        """Scores are plain floats so they serialise in responses."""
        score = cosine_similarity([1, 2, 3], [3, 2, 1])
        assert type(score) is float
        assert score == pytest.approx(10 / 14)

    def test_match_filters_ranks_and_limits(self, store, family):
        """Matches are family scoped, above threshold, best first, capped."""
        other, _ = store.create_family("Other")
        store.add_embedding(family.id, "close", [1.0, 0.1], {"member_id": "a"})
        store.add_embedding(family.id, "closest", [1.0, 0.0], {"member_id": "b"})
        store.add_embedding(family.id, "unrelated", [0.0, 1.0])
        store.add_embedding(other.id, "other family", [1.0, 0.0])

        matches = store.match_embeddings([1.0, 0.0], 0.2, 5, family.id)
        assert [m["content"] for m in matches] == ["closest", "close"]
        assert matches[0]["metadata"] == {"member_id": "b"}

        assert len(store.match_embeddings([1.0, 0.0], 0.2, 1, family.id)) == 1
        assert len(store.match_embeddings([1.0, 0.0], 0.2, 10)) == 3


class FakeQuery:
    """Records a chain of PostgREST builder calls and returns canned rows."""

    def __init__(self, table, calls, rows=None, error=None):
        self.table = table
        self.calls = calls
        self.rows = rows
        self.error = error

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((self.table, name, args))
            return self
        return method

    def execute(self):
        if self.error:
            raise self.error
        return SimpleNamespace(data=self.rows)


class FakeSupabase:
    def __init__(self, rows=None, error=None):
        self.calls = []
        self.rows = rows or {}
        self.error = error

    def table(self, name):
        return FakeQuery(name, self.calls, self.rows.get(name, []), self.error)

    def rpc(self, name, params):
        self.calls.append(("rpc", name, (params,)))
        return FakeQuery(name, self.calls, self.rows.get(name, []), self.error)


class TestSupabaseStore:
    """Tests for the Supabase store against a recorded client."""

    def test_list_members_coerces_rows(self):
        """Loose rows are validated into members with string ids."""
        client = FakeSupabase(rows={"members": [
            {"id": 1, "family_id": 9, "first_name": "A", "last_name": None, "parent_id": None},
            {"id": 2, "family_id": 9, "first_name": "B", "last_name": "X", "parent_id": 1},
            {"id": 3, "family_id": 9, "first_name": "C", "last_name": "X", "parent_id": ""},
        ]})
        store = SupabaseFamilyStore("http://supabase.test", "key", client=client)
        members = store.list_members("9")
        assert [m.id for m in members] == ["1", "2", "3"]
        assert [m.parent_id for m in members] == [None, "1", None]
        assert members[0].last_name == ""
        assert ("members", "eq", ("family_id", "9")) in client.calls

    def test_get_family_not_found(self):
        """An empty result is a missing family."""
        store = SupabaseFamilyStore("http://supabase.test", "key", client=FakeSupabase())
        with pytest.raises(FamilyNotFoundError):
            store.get_family("missing")

    def test_backend_errors_become_store_errors(self):
        """Client exceptions are wrapped in StoreError."""
        client = FakeSupabase(error=RuntimeError("connection refused"))
        store = SupabaseFamilyStore("http://supabase.test", "key", client=client)
        with pytest.raises(StoreError, match="connection refused"):
            store.list_families()

    def test_match_embeddings_calls_rpc(self):
        """Similarity search goes through the match_family_embeddings function."""
        rows = [{"content": "Member: A", "similarity": 0.9, "metadata": {"member_id": "1"}}]
        client = FakeSupabase(rows={"match_family_embeddings": rows})
        store = SupabaseFamilyStore("http://supabase.test", "key", client=client)
        assert store.match_embeddings([0.1, 0.2], 0.2, 5, "fam") == rows
        assert client.calls[0] == ("rpc", "match_family_embeddings", ({
            "query_embedding": [0.1, 0.2],
            "match_threshold": 0.2,
            "match_count": 5,
            "family": "fam",
        },))


class TestCreateStore:
    """Tests for backend selection."""

    def test_memory_backend(self):
        """The default backend is in-memory."""
        settings = SimpleNamespace(store_backend="memory", supabase_url=None, supabase_key=None)
        assert isinstance(create_store(settings), InMemoryFamilyStore)

    def test_unknown_backend_falls_back(self):
        """Unknown backends fall back to in-memory."""
        settings = SimpleNamespace(store_backend="sqlite", supabase_url=None, supabase_key=None)
        assert isinstance(create_store(settings), InMemoryFamilyStore)

    def test_supabase_requires_credentials(self):
        """Supabase without credentials is a configuration error."""
        settings = SimpleNamespace(store_backend="supabase", supabase_url=None, supabase_key=None)
        with pytest.raises(StoreError):
            create_store(settings)
