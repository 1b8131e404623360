from __future__ import annotations

import abc
import asyncio
import enum
import json
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, TypedDict, Union

import httpx


class Message(TypedDict):
    role: str
    content: str


Conversation = List[Message]


class FailureKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class InvokeSuccess:
    text: str


@dataclass(frozen=True)
class InvokeFailure:
    kind: FailureKind
    raw: str = ""
    status: Optional[int] = None


InvokeResult = Union[InvokeSuccess, InvokeFailure]


class BackendHTTPError(RuntimeError):
    """Non-2xx answer from a backend, with whatever status/code/message it carried."""

    def __init__(self, provider: str, status_code: int, message: str = "", code: Optional[str] = None):
        self.provider = provider
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"{provider} error {status_code}: {message}" if message else f"{provider} error {status_code}")


_RATE_LIMIT_STATUSES = {429}
_AUTH_STATUSES = {401, 403}
_RATE_LIMIT_CODES = {
    "resource_exhausted",
    "rate_limit_exceeded",
    "rate_limit_error",
    "too_many_requests",
    "insufficient_quota",
}
_AUTH_CODES = {
    "unauthenticated",
    "permission_denied",
    "invalid_api_key",
    "authentication_error",
}
_RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|quota|too many requests|resource.?exhausted", re.IGNORECASE)
_AUTH_PATTERN = re.compile(
    r"invalid.*key|api key not valid|unauthori[sz]ed|unauthenticated|authentication",
    re.IGNORECASE,
)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status", "statusCode"):
        status = _as_int(getattr(exc, attr, None))
        if status is not None:
            return status
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised while talking to a backend onto the failure taxonomy.

    Explicit signals win: timeouts, then HTTP status, then provider error codes.
    Without those the message text is matched against rate-limit and auth
    vocabulary. Anything unrecognised is TRANSIENT.
    """
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return FailureKind.TRANSIENT

    status = _status_of(exc)
    if status in _RATE_LIMIT_STATUSES:
        return FailureKind.RATE_LIMITED
    if status in _AUTH_STATUSES:
        return FailureKind.AUTH_FAILED

    code = str(getattr(exc, "code", "") or "").strip().lower()
    if code in _RATE_LIMIT_CODES:
        return FailureKind.RATE_LIMITED
    if code in _AUTH_CODES:
        return FailureKind.AUTH_FAILED

    text = str(getattr(exc, "message", "") or exc or "")
    if _RATE_LIMIT_PATTERN.search(text):
        return FailureKind.RATE_LIMITED
    if _AUTH_PATTERN.search(text):
        return FailureKind.AUTH_FAILED
    return FailureKind.TRANSIENT


def failure_from_exception(exc: BaseException) -> InvokeFailure:
    raw = str(exc) or type(exc).__name__
    return InvokeFailure(kind=classify_failure(exc), raw=raw[:512], status=_status_of(exc))


def parse_error_body(body: str) -> Tuple[str, Optional[str]]:
    """Extract (message, code) from a JSON error body; falls back to the raw text."""
    try:
        obj = json.loads(body)
    except ValueError:
        return body[:1024], None
    if not isinstance(obj, dict):
        return body[:1024], None
    err = obj.get("error")
    if isinstance(err, dict):
        message = str(err.get("message") or "")
        code = err.get("status") or err.get("code") or err.get("type")
        if code is not None and not isinstance(code, str):
            code = None
        return message or body[:1024], code
    if isinstance(err, str):
        return err, None
    return str(obj.get("message") or body[:1024]), None


class ChatBackend(abc.ABC):
    """One supported chat-completion service.

    Adapters are shared by every credential of their backend; the credential is
    supplied per call. ``invoke`` never raises: every outcome is an InvokeResult.
    ``stream_chat`` yields text chunks and raises on failure so the caller can
    classify it.
    """

    provider_name: str = "unknown"
    default_model: str = ""

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        max_tokens: int = 1024,
        temperature: float = 0.7,
        top_p: float = 0.9,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model or self.default_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, conversation: Conversation, credential: str) -> InvokeResult:
        try:
            text = await self._complete(conversation, credential)
        except Exception as e:
            return failure_from_exception(e)
        if text is not None and not isinstance(text, str):
            return InvokeFailure(kind=FailureKind.TRANSIENT, raw=f"unexpected_content:{type(text).__name__}")
        text = (text or "").strip()
        if not text:
            return InvokeFailure(kind=FailureKind.TRANSIENT, raw="empty_response")
        return InvokeSuccess(text=text)

    @abc.abstractmethod
    async def _complete(self, conversation: Conversation, credential: str) -> str:
        ...

    @abc.abstractmethod
    def stream_chat(self, conversation: Conversation, credential: str) -> AsyncIterator[str]:
        ...

    def _client(self) -> httpx.AsyncClient:
        # Short-lived client per call so connections are released with the request
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _raise_for_status(self, status_code: int, body: str) -> None:
        if status_code < 400:
            return
        message, code = parse_error_body(body or "")
        raise BackendHTTPError(self.provider_name, status_code, message, code)


def split_preamble(conversation: Conversation) -> Tuple[str, List[Dict[str, str]]]:
    """Separate the system preamble from the user/assistant turns."""
    system_parts = [m["content"] for m in conversation if m.get("role") == "system"]
    turns = [{"role": m["role"], "content": m["content"]} for m in conversation if m.get("role") != "system"]
    return "\n\n".join(system_parts), turns
