import json
import logging
from typing import Any, AsyncIterator, Dict, List

from .base import ChatBackend, Conversation, split_preamble

logger = logging.getLogger("faq_ai.providers.google")


class GeminiBackend(ChatBackend):
    """Google Generative Language API (Gemini).

    Endpoint: POST https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent
    Docs: https://ai.google.dev/api/rest/v1beta/models/generateContent
    """

    provider_name: str = "gemini"
    default_model: str = "gemini-2.0-flash-lite"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream, application/json",
            "x-goog-api-key": credential,
            "User-Agent": "faq-ai-api/0.1.0",
        }

    def _payload(self, conversation: Conversation) -> Dict[str, Any]:
        preamble, turns = split_preamble(conversation)
        contents: List[Dict[str, Any]] = []
        for m in turns:
            # Gemini names the assistant side "model"
            role = "model" if m["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": m["content"]}]})
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature,
            "topP": self.top_p,
            "candidateCount": 1,
        }
        if self.max_tokens > 0:
            generation_config["maxOutputTokens"] = self.max_tokens
        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if preamble:
            # v1beta accepts systemInstruction as a Content object without a role
            payload["systemInstruction"] = {"parts": [{"text": preamble}]}
        return payload

    @staticmethod
    def _candidate_text(obj: Dict[str, Any]) -> str:
        candidates = (obj or {}).get("candidates") or []
        if not candidates:
            return ""
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        return "".join((p.get("text") or "") for p in parts)

    def _log_http_error(self, event: str, status: int, body: str) -> None:
        logger.error(json.dumps({
            "event": event,
            "status": status,
            "body": (body or "")[:1024],
            "model": self.model,
        }))

    async def _complete(self, conversation: Conversation, credential: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        async with self._client() as client:
            resp = await client.post(url, headers=self._headers(credential), json=self._payload(conversation))
            if resp.status_code >= 400:
                self._log_http_error("gemini_http_error", resp.status_code, resp.text)
            self._raise_for_status(resp.status_code, resp.text)
            data = resp.json()
        return self._candidate_text(data)

    async def stream_chat(self, conversation: Conversation, credential: str) -> AsyncIterator[str]:
        url = f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"
        async with self._client() as client:
            async with client.stream(
                "POST", url, headers=self._headers(credential), json=self._payload(conversation)
            ) as resp:
                if resp.status_code >= 400:
                    raw = (await resp.aread()).decode(errors="replace")
                    self._log_http_error("gemini_stream_http_error", resp.status_code, raw)
                    self._raise_for_status(resp.status_code, raw)
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    # Strip SSE framing when present
                    if line.startswith("data:"):
                        line = line[len("data:"):].strip()
                    if line.startswith(":") or line.startswith("event:"):
                        continue
                    try:
                        obj = json.loads(line)
                    except ValueError:
                        continue
                    if not isinstance(obj, dict):
                        continue
                    text = self._candidate_text(obj)
                    if text:
                        yield text
