"""Generation statistics and level-ordered hierarchy for parent-pointer family trees.

Every function here is a pure view over a snapshot of members. Anything that
exposes ``id`` and ``parent_id`` attributes can be passed in; the HTTP layer
hands over validated ``Member`` models.
"""

import logging
from typing import Iterable, Protocol, Sequence, TypeVar

logger = logging.getLogger("familytree.graph")


class TreeNode(Protocol):
    """Minimal shape the graph routines need from a member."""
    id: str
    parent_id: str | None


NodeT = TypeVar("NodeT", bound=TreeNode)


# ============================================================================
# Shared Graph Utilities
# ============================================================================

def build_parent_map(members: Iterable[TreeNode]) -> dict[str, str | None]:
    """
    Map each member id to its parent id.

    A parent id that is empty or does not belong to the snapshot (deleted
    parent, member of another family) is mapped to None, so the member is a
    root for every traversal.
    """
    members = list(members)
    known_ids = {member.id for member in members}
    parent_of: dict[str, str | None] = {}
    for member in members:
        parent_id = member.parent_id
        parent_of[member.id] = parent_id if parent_id and parent_id in known_ids else None
    return parent_of


def build_children_index(members: Iterable[NodeT]) -> dict[str, list[NodeT]]:
    """Map parent id -> children in input order. Dangling parents are not indexed."""
    members = list(members)
    known_ids = {member.id for member in members}
    children: dict[str, list[NodeT]] = {}
    for member in members:
        parent_id = member.parent_id
        if parent_id and parent_id in known_ids:
            children.setdefault(parent_id, []).append(member)
    return children


class CycleGuard:
    """
    The set of nodes currently being resolved by one upward walk.

    ``enter`` refuses a node that is already on the walk, which is exactly the
    moment the walk has closed a loop. The insertion order is kept so the
    members of that loop can be recovered with ``cycle_from``.
    """

    def __init__(self) -> None:
        self._visiting: dict[str, int] = {}

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._visiting

    def __len__(self) -> int:
        return len(self._visiting)

    @property
    def path(self) -> list[str]:
        """Nodes entered so far, starting node first."""
        return list(self._visiting)

    def enter(self, node_id: str) -> bool:
        if node_id in self._visiting:
            return False
        self._visiting[node_id] = len(self._visiting)
        return True

    def cycle_from(self, node_id: str) -> list[str]:
        """Nodes on the loop closed by revisiting ``node_id``."""
        start = self._visiting.get(node_id)
        if start is None:
            return []
        return self.path[start:]


def walk_ancestors(parent_of: dict[str, str | None], start_id: str) -> list[str]:
    """
    Ids from ``start_id`` up to its root, ``start_id`` included.

    Stops at the first repeated id, so a chain that loops back on itself is
    returned up to the point where it would start over.
    """
    guard = CycleGuard()
    node_id: str | None = start_id
    while node_id is not None and guard.enter(node_id):
        node_id = parent_of.get(node_id)
    return guard.path


def would_create_cycle(members: Iterable[TreeNode], member_id: str, new_parent_id: str | None) -> bool:
    """Check whether pointing ``member_id`` at ``new_parent_id`` closes a loop."""
    if not new_parent_id:
        return False
    if new_parent_id == member_id:
        return True
    parent_of = build_parent_map(members)
    if new_parent_id not in parent_of:
        return False
    return member_id in walk_ancestors(parent_of, new_parent_id)


def parent_names(members: Iterable[TreeNode]) -> dict[str, str]:
    """Full name of each member's direct parent, for members whose parent resolves."""
    members = list(members)
    by_id = {member.id: member for member in members}
    names = {}
    for member_id, parent_id in build_parent_map(members).items():
        if parent_id is None:
            continue
        parent = by_id[parent_id]
        first = getattr(parent, "first_name", None) or ""
        last = getattr(parent, "last_name", None) or ""
        names[member_id] = f"{first} {last}".strip()
    return names


def member_summary(member, parent_name: str | None = None, family_name: str | None = None) -> str:
    """One-paragraph description of a member and their direct parent."""
    lines = []
    if family_name:
        lines.append(f"Family: {family_name}.")
    first = getattr(member, "first_name", None) or ""
    last = getattr(member, "last_name", None) or ""
    lines.append(f"Member: {first} {last}".strip())
    if getattr(member, "date_of_birth", None):
        lines.append(f"Date of birth: {member.date_of_birth}.")
    if parent_name:
        lines.append(f"Direct parent: {parent_name}.")
    if getattr(member, "biography", None):
        lines.append(f"Biography: {member.biography}")
    return " ".join(lines)


# ============================================================================
# Stats Engine
# ============================================================================

def compute_depths(members: Iterable[TreeNode]) -> dict[str, int]:
    """
    Depth of every member: 1 for a root, 1 + depth(parent) otherwise.

    Each member is resolved by an iterative walk up its parent chain that stops
    at a root, at an already computed depth, or at a node already on the walk.
    In the last case every member of the loop is treated as a root (depth 1)
    and the members below it count on from there. The memo only lives for this
    call.
    """
    parent_of = build_parent_map(members)
    depths: dict[str, int] = {}

    for member_id in parent_of:
        if member_id in depths:
            continue

        guard = CycleGuard()
        node_id: str | None = member_id
        depth = 0
        while node_id is not None:
            if node_id in depths:
                depth = depths[node_id]
                break
            if not guard.enter(node_id):
                loop = guard.cycle_from(node_id)
                logger.debug(f"Parent cycle through {len(loop)} member(s) starting at {node_id}")
                for cyclic_id in loop:
                    depths[cyclic_id] = 1
                break
            node_id = parent_of[node_id]

        # Unwind the walk from its top end, root side first
        for walked_id in reversed(guard.path):
            if walked_id in depths:
                depth = depths[walked_id]
                continue
            depth += 1
            depths[walked_id] = depth

    return depths


def compute_stats(members: Sequence[TreeNode]) -> dict[str, int]:
    """
    Member count and generation count (tree height) of a family.

    Returns zeros for an empty family. Never raises on cycles or dangling
    parent references; ``generation_count`` is bounded by ``member_count``.
    """
    members = list(members)
    if not members:
        return {"member_count": 0, "generation_count": 0}

    depths = compute_depths(members)
    return {
        "member_count": len(members),
        "generation_count": max(depths.values()),
    }


# ============================================================================
# Hierarchy Builder
# ============================================================================

def _expand_levels(members: list[NodeT]) -> tuple[list[list[NodeT]], set[str]]:
    parent_of = build_parent_map(members)
    children = build_children_index(members)

    placed: set[str] = set()
    current = []
    for member in members:
        if parent_of[member.id] is None and member.id not in placed:
            placed.add(member.id)
            current.append(member)

    levels = []
    while current:
        levels.append(current)
        next_level = []
        for member in current:
            for child in children.get(member.id, []):
                if child.id in placed:
                    continue
                placed.add(child.id)
                next_level.append(child)
        current = next_level

    return levels, placed


def build_levels(members: Sequence[NodeT]) -> list[list[NodeT]]:
    """
    Group members into generations, breadth-first from the roots.

    Level 0 holds members without a resolvable parent, level k the children of
    level k-1. Input order is kept inside a level. Members that cannot be
    reached from any root (caught in, or hanging below, a parent cycle) are
    left out; see ``find_detached``.
    """
    levels, _ = _expand_levels(list(members))
    return levels


def find_detached(members: Sequence[NodeT]) -> list[NodeT]:
    """Members that ``build_levels`` leaves out, in input order."""
    members = list(members)
    _, placed = _expand_levels(members)
    detached = [member for member in members if member.id not in placed]
    if detached:
        logger.debug(f"{len(detached)} member(s) unreachable from any root")
    return detached
