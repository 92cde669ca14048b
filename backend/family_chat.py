"""Retrieval-augmented answers about a family.

The question is embedded, the closest stored snippets of family information
are retrieved, and the model is asked to answer from those snippets only.
"""

import logging

from family_models import ChatResponse, SourceSnippet
from family_store import FamilyStore
from tools import OllamaClient

logger = logging.getLogger("familytree.chat")

# Low threshold: the match count already limits what is retrieved
MATCH_THRESHOLD = 0.2
MAX_MATCHES = 10


def build_prompt(question: str, snippets: list[SourceSnippet]) -> str:
    """Prompt that restricts the model to the retrieved family information."""
    context = "\n".join(f"- {s.content}" for s in snippets)
    return (
        "You are an expert genealogy assistant. Use ONLY the information in the Info "
        "section to answer. If the answer is not present, say you don't know.\n\n"
        f"Info:\n{context or '(no info)'}\n\n"
        f"Question: {question}\n\n"
        "Answer:"
    )


async def answer_question(
    store: FamilyStore,
    ollama: OllamaClient,
    question: str,
    family_id: str | None = None,
    top_k: int = 5,
) -> ChatResponse:
    """
    Answer a question from a family's indexed information.

    Raises ``AssistantError`` when the model backend fails and ``StoreError``
    when retrieval fails.
    """
    match_count = min(MAX_MATCHES, max(1, top_k))

    query_embedding = await ollama.embed(question)
    matches = store.match_embeddings(query_embedding, MATCH_THRESHOLD, match_count, family_id)
    snippets = [
        SourceSnippet(
            content=m.get("content") or "",
            similarity=m.get("similarity"),
            metadata=m.get("metadata") or {},
        )
        for m in matches
    ]
    logger.info(f"Retrieved {len(snippets)} snippet(s) for family {family_id or '*'}")

    answer = await ollama.generate(build_prompt(question, snippets))
    logger.info(f"Answer generated ({len(answer)} chars)")
    return ChatResponse(answer=answer, sources=snippets)
