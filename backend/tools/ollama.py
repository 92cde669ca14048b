"""Ollama client for question embeddings and grounded answer generation."""

import logging

import httpx

logger = logging.getLogger("familytree.tools.ollama")


class AssistantError(Exception):
    """The language model backend could not serve a request."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.details = details


class OllamaClient:
    """Thin async wrapper over the Ollama ``/api/embeddings`` and ``/api/generate`` endpoints.

    Args:
        base_url: Ollama server, e.g. ``http://localhost:11434``
        generate_model: Model used to write answers
        embed_model: Model used to embed questions
        http_client: Optional pre-built client (tests pass one with a mock transport)
        timeout: Request timeout in seconds when the client is built here
    """

    def __init__(
        self,
        base_url: str,
        generate_model: str,
        embed_model: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.generate_model = generate_model
        self.embed_model = embed_model
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, payload: dict, failure: str) -> dict:
        url = f"{self.base_url}{path}"
        logger.debug(f"POST {url} (model={payload.get('model')})")
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"{failure}: {e}")
            raise AssistantError(failure, details=str(e)) from e

        if response.status_code != 200:
            logger.warning(f"{failure}, status: {response.status_code}")
            raise AssistantError(failure, details=response.text)
        return response.json()

    async def embed(self, text: str) -> list[float]:
        """Embedding vector for ``text``."""
        data = await self._post(
            "/api/embeddings",
            {"model": self.embed_model, "prompt": text},
            "Failed to get embeddings",
        )
        embedding = data.get("embedding")
        if not embedding:
            raise AssistantError("Failed to get embeddings", details="response had no embedding")
        return embedding

    async def generate(self, prompt: str) -> str:
        """Complete ``prompt`` without streaming."""
        data = await self._post(
            "/api/generate",
            {"model": self.generate_model, "prompt": prompt, "stream": False},
            "Failed to generate answer",
        )
        return data.get("response") or data.get("answer") or ""

    async def aclose(self) -> None:
        await self._client.aclose()
