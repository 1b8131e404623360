import json
from typing import Any, AsyncIterator, Dict

from .base import ChatBackend, Conversation


def _content_text(content: Any) -> str:
    """Message content as text; some routed models answer with a list of typed parts."""
    if isinstance(content, list):
        return "".join(p.get("text") or "" for p in content if isinstance(p, dict))
    return content or ""


class OpenAICompatibleBackend(ChatBackend):
    """Chat backend speaking the OpenAI ``/chat/completions`` dialect.

    The conversation is forwarded as-is: system preamble first, then the
    user/assistant turns.
    """

    base_url: str = ""
    user_agent: str = "faq-ai-api/0.1.0"

    def _headers(self, credential: str, *, stream: bool = False) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "User-Agent": self.user_agent,
        }

    def _payload(self, conversation: Conversation, *, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in conversation],
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": stream,
        }
        if self.max_tokens > 0:
            payload["max_tokens"] = self.max_tokens
        return payload

    async def _complete(self, conversation: Conversation, credential: str) -> str:
        url = f"{self.base_url}/chat/completions"
        async with self._client() as client:
            resp = await client.post(url, headers=self._headers(credential), json=self._payload(conversation))
            self._raise_for_status(resp.status_code, resp.text)
            data = resp.json()
        msg = (((data or {}).get("choices") or [{}])[0].get("message") or {})
        return _content_text(msg.get("content"))

    async def stream_chat(self, conversation: Conversation, credential: str) -> AsyncIterator[str]:
        url = f"{self.base_url}/chat/completions"
        headers = self._headers(credential, stream=True)
        payload = self._payload(conversation, stream=True)
        async with self._client() as client:
            async with client.stream("POST", url, headers=headers, json=payload) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    self._raise_for_status(resp.status_code, raw.decode(errors="replace"))
                async for line in resp.aiter_lines():
                    if not line or line.startswith(":"):
                        continue
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        obj = json.loads(data)
                    except ValueError:
                        continue
                    choices = obj.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    token = delta.get("content")
                    if token is None:
                        # Some providers use the legacy completion field
                        token = choices[0].get("text") or ""
                    token = _content_text(token)
                    if token:
                        yield token
