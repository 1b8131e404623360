import json
from typing import Any, AsyncIterator, Dict, List

from .base import ChatBackend, Conversation, split_preamble


class CohereBackend(ChatBackend):
    """Cohere chat API (v1).

    The newest user turn travels as ``message``; earlier turns go in
    ``chat_history`` with Cohere's USER/CHATBOT roles and the system text as
    ``preamble``.
    """

    provider_name: str = "cohere"
    default_model: str = "command-r7b-12-2024"
    base_url: str = "https://api.cohere.com/v1"

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "faq-ai-api/0.1.0",
        }

    def _payload(self, conversation: Conversation, *, stream: bool = False) -> Dict[str, Any]:
        preamble, turns = split_preamble(conversation)
        message = ""
        if turns and turns[-1]["role"] == "user":
            message = turns[-1]["content"]
            turns = turns[:-1]
        chat_history: List[Dict[str, str]] = [
            {"role": "CHATBOT" if m["role"] == "assistant" else "USER", "message": m["content"]}
            for m in turns
        ]
        payload: Dict[str, Any] = {
            "model": self.model,
            "message": message,
            "chat_history": chat_history,
            "temperature": self.temperature,
            "p": self.top_p,
            "stream": stream,
        }
        if preamble:
            payload["preamble"] = preamble
        if self.max_tokens > 0:
            payload["max_tokens"] = self.max_tokens
        return payload

    async def _complete(self, conversation: Conversation, credential: str) -> str:
        url = f"{self.base_url}/chat"
        async with self._client() as client:
            resp = await client.post(url, headers=self._headers(credential), json=self._payload(conversation))
            self._raise_for_status(resp.status_code, resp.text)
            data = resp.json()
        return (data or {}).get("text") or ""

    async def stream_chat(self, conversation: Conversation, credential: str) -> AsyncIterator[str]:
        url = f"{self.base_url}/chat"
        payload = self._payload(conversation, stream=True)
        async with self._client() as client:
            async with client.stream("POST", url, headers=self._headers(credential), json=payload) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    self._raise_for_status(resp.status_code, raw.decode(errors="replace"))
                # Newline-delimited JSON events
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                    except ValueError:
                        continue
                    event = obj.get("event_type")
                    if event == "text-generation":
                        text = obj.get("text") or ""
                        if text:
                            yield text
                    elif event == "stream-end":
                        break
