import os
from typing import Optional

from .base import GenerationClient
from .mock import MockGenerationClient


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_generation_client(provider: Optional[str] = None, model: Optional[str] = None) -> GenerationClient:
    """Return a generation client based on env or explicit overrides.

    Env precedence:
      - AI_PROVIDER_GENERATION
      - AI_PROVIDER
      - defaults to 'mock'
    Model from AI_GENERATION_MODEL if not given.
    """
    prov = (provider or _env_str("AI_PROVIDER_GENERATION") or _env_str("AI_PROVIDER") or "mock").lower()
    mdl = model or _env_str("AI_GENERATION_MODEL") or None

    if prov in ("mock", "test"):
        return MockGenerationClient(model=mdl)

    if prov in ("openrouter", "router"):
        try:
            from .openrouter import OpenRouterGenerationClient
            return OpenRouterGenerationClient(model=mdl)
        except RuntimeError:
            # Missing API key: keep the service usable with the mock backend
            return MockGenerationClient(model=mdl)

    # Unknown -> mock
    return MockGenerationClient(model=mdl)
