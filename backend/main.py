"""Family Tree backend.

FastAPI server exposing families, their members, generation statistics,
level-ordered trees and a retrieval-augmented family assistant.
"""

import logging
from contextlib import asynccontextmanager

from app_config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("familytree")

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from family_chat import answer_question
from family_graph import (
    build_levels,
    compute_stats,
    find_detached,
    member_summary,
    parent_names,
    would_create_cycle,
)
from family_models import (
    ChatRequest,
    ChatResponse,
    Family,
    FamilyCreate,
    FamilyStats,
    Member,
    MemberCreate,
    MemberDetail,
    MemberUpdate,
    Relationship,
    RelationshipType,
    TreeResponse,
)
from family_store import (
    FamilyNotFoundError,
    FamilyStore,
    MemberNotFoundError,
    StoreError,
    create_store,
)
from tools import AssistantError, OllamaClient

# Global state
family_store: FamilyStore | None = None
ollama_client: OllamaClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - open and close the store and the Ollama client."""
    global family_store, ollama_client

    logger.info(f"Initializing '{settings.store_backend}' family store...")
    family_store = create_store(settings)
    ollama_client = OllamaClient(
        settings.ollama_base_url,
        settings.ollama_generate_model,
        settings.ollama_embed_model,
        timeout=settings.ollama_timeout,
    )
    logger.info(f"Family assistant will use Ollama at {settings.ollama_base_url}")

    yield

    if ollama_client:
        logger.info("Closing Ollama client...")
        await ollama_client.aclose()


# Create FastAPI app
app = FastAPI(
    title="Family Tree",
    description="Family trees with generation statistics and a family assistant",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Helpers
# ============================================================================

def _require_store() -> FamilyStore:
    if family_store is None:
        logger.error("Family store not initialized")
        raise HTTPException(status_code=503, detail="Family store not initialized")
    return family_store


def _load_family(family_id: str) -> tuple[Family, list[Member]]:
    """Fetch a family and its member snapshot, mapping store errors to HTTP errors."""
    store = _require_store()
    try:
        family = store.get_family(family_id)
        members = store.list_members(family_id)
    except FamilyNotFoundError:
        logger.warning(f"Family {family_id} not found")
        raise HTTPException(status_code=404, detail="Not found")
    except StoreError as e:
        logger.error(f"Failed to load family {family_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    logger.debug(f"Loaded family {family_id} with {len(members)} members")
    return family, members


def _load_member(family_id: str, member_id: str) -> Member:
    store = _require_store()
    try:
        member = store.get_member(member_id)
    except MemberNotFoundError:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if member.family_id != family_id:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found in family {family_id}")
    return member


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "store_ready": family_store is not None,
        "assistant_ready": ollama_client is not None,
    }


@app.get("/families", response_model=list[FamilyStats])
async def list_families():
    """All families with their member and generation counts."""
    store = _require_store()
    try:
        families = store.list_families()
    except StoreError as e:
        logger.error(f"Failed to list families: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    results = []
    for family in families:
        try:
            members = store.list_members(family.id)
        except StoreError as e:
            logger.error(f"Failed to list members of family {family.id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        results.append(FamilyStats(**family.model_dump(), **compute_stats(members)))
    logger.info(f"Returning {len(results)} families")
    return results


@app.post("/families", status_code=201)
async def create_family(payload: FamilyCreate):
    """Create a family together with its first member."""
    store = _require_store()
    logger.info(f"Creating family '{payload.name}'")
    try:
        family, creator = store.create_family(payload.name)
    except StoreError as e:
        logger.error(f"Failed to create family: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"family": family, "member": creator}


@app.get("/families/{family_id}", response_model=Family)
async def get_family(family_id: str):
    """Family metadata."""
    family, _ = _load_family(family_id)
    return family


@app.delete("/families/{family_id}", status_code=204)
async def delete_family(family_id: str):
    """Delete a family with all of its members."""
    store = _require_store()
    try:
        store.delete_family(family_id)
    except FamilyNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    except StoreError as e:
        logger.error(f"Failed to delete family {family_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/families/{family_id}/stats", response_model=FamilyStats)
async def get_family_stats(family_id: str):
    """Family metadata merged with member count and generation count."""
    family, members = _load_family(family_id)
    stats = compute_stats(members)
    logger.info(f"Stats for family {family_id}: {stats['member_count']} members, "
                f"{stats['generation_count']} generations")
    return FamilyStats(**family.model_dump(), **stats)


@app.get("/families/{family_id}/tree", response_model=TreeResponse)
async def get_family_tree(family_id: str):
    """Members grouped by generation, roots first, for rendering."""
    family, members = _load_family(family_id)
    levels = build_levels(members)
    detached = find_detached(members)
    if detached:
        logger.warning(f"Family {family_id}: {len(detached)} member(s) not reachable from a root")
    stats = compute_stats(members)
    return TreeResponse(family=family, levels=levels, detached=detached, **stats)


@app.get("/families/{family_id}/members", response_model=list[Member])
async def list_members(family_id: str):
    """Flat member list, also used as the candidate list when choosing a parent."""
    _, members = _load_family(family_id)
    return members


@app.get("/families/{family_id}/members/{member_id}", response_model=MemberDetail)
async def get_member(family_id: str, member_id: str):
    """A member with their direct parent's name and a readable summary."""
    family, members = _load_family(family_id)
    member = _load_member(family_id, member_id)
    parent_name = parent_names(members).get(member.id)
    return MemberDetail(
        **member.model_dump(),
        parent_name=parent_name,
        summary=member_summary(member, parent_name, family.name),
    )


@app.post("/families/{family_id}/members", response_model=Member, status_code=201)
async def add_member(family_id: str, payload: MemberCreate):
    """
    Add a member to a family.

    Choosing a related member requires a relation, and the related member must
    already belong to the family. It becomes the direct parent only for the
    'child' relation; the label itself is recorded best-effort.
    """
    store = _require_store()
    if payload.related_member_id and payload.relation is None:
        raise HTTPException(status_code=400, detail="Please choose a member relation")
    if payload.related_member_id:
        _, members = _load_family(family_id)
        if payload.related_member_id not in {m.id for m in members}:
            logger.warning(f"Related member {payload.related_member_id} is not in family {family_id}")
            raise HTTPException(
                status_code=400,
                detail=f"Member {payload.related_member_id} is not part of family {family_id}",
            )

    fields = payload.model_dump(exclude={"related_member_id", "relation"})
    if payload.relation == RelationshipType.CHILD and payload.related_member_id:
        fields["parent_id"] = payload.related_member_id

    logger.info(f"Adding member '{payload.first_name} {payload.last_name}' to family {family_id}")
    try:
        member = store.add_member(family_id, fields)
    except FamilyNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    except StoreError as e:
        logger.error(f"Failed to add member to family {family_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if payload.related_member_id and payload.relation is not None:
        store.record_relationship(Relationship(
            member_id=member.id,
            related_member_id=payload.related_member_id,
            relationship_type=payload.relation,
        ))

    return member


@app.patch("/families/{family_id}/members/{member_id}", response_model=Member)
async def update_member(family_id: str, member_id: str, payload: MemberUpdate):
    """
    Update a member. ``parent_id`` may be changed to any member or cleared.

    Parents outside the family and edits that close a parent loop are accepted;
    the tree views tolerate both and the edit is logged.
    """
    store = _require_store()
    _, members = _load_family(family_id)
    _load_member(family_id, member_id)

    changes = payload.model_dump(exclude_unset=True)
    for name_field in ("first_name", "last_name"):
        if changes.get(name_field, "") is None:
            del changes[name_field]
    if "parent_id" in changes:
        new_parent_id = changes["parent_id"]
        if new_parent_id and new_parent_id not in {m.id for m in members}:
            logger.warning(f"Member {member_id} now points at parent {new_parent_id} outside family {family_id}")
        elif would_create_cycle(members, member_id, new_parent_id):
            logger.warning(f"Member {member_id} -> parent {new_parent_id} closes a parent cycle in family {family_id}")

    logger.info(f"Updating member {member_id} ({', '.join(changes) or 'no changes'})")
    try:
        return store.update_member(member_id, changes)
    except MemberNotFoundError:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    except StoreError as e:
        logger.error(f"Failed to update member {member_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """Answer a question from the family's indexed information."""
    question = request.question.strip()
    logger.info(f"Chat request received: '{question[:50]}...'" if len(question) > 50 else f"Chat request received: '{question}'")

    if not question:
        raise HTTPException(status_code=400, detail="Invalid question")

    store = _require_store()
    if not ollama_client:
        logger.error("Ollama client not initialized")
        raise HTTPException(status_code=503, detail="Family assistant not initialized")

    try:
        return await answer_question(store, ollama_client, question, request.family_id, request.top_k)
    except AssistantError as e:
        logger.error(f"Assistant failed: {e} ({e.details})")
        raise HTTPException(status_code=502, detail={"error": str(e), "details": e.details})
    except StoreError as e:
        logger.error(f"Retrieval failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
