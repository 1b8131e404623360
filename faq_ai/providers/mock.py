import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from .base import ChatBackend, Conversation


class MockBackend(ChatBackend):
    """Deterministic backend for local development and tests.

    ``script`` maps a credential to the steps it plays back, one per call: a
    string is returned as the completion, an exception instance is raised. The
    last step repeats once the script runs out. Credentials without a script
    echo the latest user message.
    """

    provider_name: str = "mock"
    default_model: str = "mock-chat-1"

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        script: Optional[Dict[str, Sequence[Any]]] = None,
        delay: float = 0.0,
        **kwargs,
    ):
        super().__init__(model=model, **kwargs)
        self._script: Dict[str, List[Any]] = {k: list(v) for k, v in (script or {}).items()}
        self._delay = delay
        self.calls: List[Tuple[str, Conversation]] = []

    def calls_for(self, credential: str) -> int:
        return sum(1 for cred, _ in self.calls if cred == credential)

    def _next_step(self, conversation: Conversation, credential: str) -> Any:
        steps = self._script.get(credential)
        if not steps:
            last_user = next((m["content"] for m in reversed(conversation) if m["role"] == "user"), "")
            return last_user or "Hello, world!"
        return steps.pop(0) if len(steps) > 1 else steps[0]

    async def _play(self, conversation: Conversation, credential: str) -> str:
        self.calls.append((credential, list(conversation)))
        if self._delay:
            await asyncio.sleep(self._delay)
        step = self._next_step(conversation, credential)
        if isinstance(step, BaseException):
            raise step
        return str(step)

    async def _complete(self, conversation: Conversation, credential: str) -> str:
        return await self._play(conversation, credential)

    async def stream_chat(self, conversation: Conversation, credential: str) -> AsyncIterator[str]:
        text = await self._play(conversation, credential)
        for token in _chunk_text(text, size=6):
            yield token


def _chunk_text(s: str, size: int = 6):
    for i in range(0, len(s), size):
        yield s[i : i + size]
