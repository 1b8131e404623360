from typing import Dict, Optional, Type

from .base import ChatBackend
from .cohere import CohereBackend
from .google import GeminiBackend
from .groq import GroqBackend
from .mock import MockBackend
from .openrouter import OpenRouterBackend


BACKEND_CLASSES: Dict[str, Type[ChatBackend]] = {
    "gemini": GeminiBackend,
    "cohere": CohereBackend,
    "groq": GroqBackend,
    "openrouter": OpenRouterBackend,
    "mock": MockBackend,
}

_ALIASES = {
    "google": "gemini",
    "router": "openrouter",
    "test": "mock",
}


def normalize_backend_name(name: Optional[str]) -> Optional[str]:
    """Canonical backend tag for a configured name, or None if unsupported."""
    key = (name or "").strip().lower()
    key = _ALIASES.get(key, key)
    return key if key in BACKEND_CLASSES else None


def get_backend(name: str, model: Optional[str] = None, **params) -> ChatBackend:
    """Build the adapter for a backend tag.

    ``params`` (max_tokens, temperature, top_p, timeout, transport) are
    forwarded verbatim to the adapter.
    """
    key = normalize_backend_name(name)
    if key is None:
        raise ValueError(f"Unsupported AI backend: {name!r}")
    return BACKEND_CLASSES[key](model=model, **params)
