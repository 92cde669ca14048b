from .ollama import AssistantError, OllamaClient

__all__ = [
    "AssistantError",
    "OllamaClient",
]
