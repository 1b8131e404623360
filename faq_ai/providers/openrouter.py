import os
from typing import Dict, Optional

from .openai_compat import OpenAICompatibleBackend


class OpenRouterBackend(OpenAICompatibleBackend):
    provider_name: str = "openrouter"
    default_model: str = "openai/gpt-4o-mini"
    base_url: str = "https://openrouter.ai/api/v1"

    def __init__(self, model: Optional[str] = None, **kwargs):
        super().__init__(model=model, **kwargs)
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "SBO FAQ Assistant").strip() or "SBO FAQ Assistant"

    def _headers(self, credential: str, *, stream: bool = False) -> Dict[str, str]:
        headers = super()._headers(credential, stream=stream)
        headers["HTTP-Referer"] = self._referer
        headers["X-Title"] = self._title
        return headers
