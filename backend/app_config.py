"""Environment-driven settings for the family tree backend."""

import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Values read once from the environment (or a local .env file)."""

    def __init__(self) -> None:
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

        # Storage backend: "memory" (process-local) or "supabase"
        self.store_backend: str = os.getenv("STORE_BACKEND", "memory").lower()
        self.supabase_url: str | None = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
        self.supabase_key: str | None = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

        # Ollama backend for the family assistant
        self.ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")
        self.ollama_generate_model: str = os.getenv("OLLAMA_GENERATE_MODEL", "llama3.1:8b")
        self.ollama_embed_model: str = os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text")
        self.ollama_timeout: float = float(os.getenv("OLLAMA_TIMEOUT", "60"))

        origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173")
        self.cors_origins: list[str] = [o.strip() for o in origins.split(",") if o.strip()]


settings = Settings()
