import json
from typing import Any, Dict, List

import httpx
import pytest

from faq_ai.prompts import build_conversation
from faq_ai.providers.base import BackendHTTPError, ChatBackend, FailureKind, InvokeFailure, InvokeSuccess
from faq_ai.providers.cohere import CohereBackend
from faq_ai.providers.factory import get_backend, normalize_backend_name
from faq_ai.providers.google import GeminiBackend
from faq_ai.providers.groq import GroqBackend
from faq_ai.providers.mock import MockBackend
from faq_ai.providers.openrouter import OpenRouterBackend


HISTORY = [
    {"role": "user", "content": "When is enrollment?"},
    {"role": "assistant", "content": "Enrollment opens in June."},
]


def _conversation():
    return build_conversation("And the deadline?", HISTORY, preamble="You are the SBO assistant.")


class Recorder:
    """MockTransport handler that records requests and replays a canned response."""

    def __init__(self, status: int = 200, body: Any = None, content: bytes = b""):
        self.status = status
        self.body = body
        self.content = content
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status, content=self.content)

    @property
    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


def _transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


# ---- OpenAI-compatible (groq / openrouter) ----

@pytest.mark.asyncio
async def test_groq_success_payload_and_parsing():
    rec = Recorder(body={"choices": [{"message": {"role": "assistant", "content": " June 30. "}}]})
    backend = GroqBackend(transport=_transport(rec))

    result = await backend.invoke(_conversation(), "gsk-1")

    assert result == InvokeSuccess(text="June 30.")
    req = rec.requests[0]
    assert req.url == "https://api.groq.com/openai/v1/chat/completions"
    assert req.headers["authorization"] == "Bearer gsk-1"
    body = rec.last_json
    assert body["model"] == "llama-3.1-8b-instant"
    assert body["temperature"] == 0.7
    assert body["top_p"] == 0.9
    assert body["max_tokens"] == 1024
    assert body["stream"] is False
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
    assert body["messages"][0]["content"] == "You are the SBO assistant."


@pytest.mark.asyncio
async def test_groq_forwards_configured_parameters():
    rec = Recorder(body={"choices": [{"message": {"content": "ok"}}]})
    backend = GroqBackend(model="llama-3.3-70b", max_tokens=64, temperature=0.1, top_p=0.5, transport=_transport(rec))

    await backend.invoke(_conversation(), "k")

    body = rec.last_json
    assert body["model"] == "llama-3.3-70b"
    assert (body["max_tokens"], body["temperature"], body["top_p"]) == (64, 0.1, 0.5)


@pytest.mark.asyncio
async def test_groq_rate_limit_is_classified():
    rec = Recorder(status=429, body={"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}})
    result = await GroqBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert isinstance(result, InvokeFailure)
    assert result.kind is FailureKind.RATE_LIMITED
    assert result.status == 429


@pytest.mark.asyncio
async def test_groq_invalid_key_is_auth_failure():
    rec = Recorder(status=401, body={"error": {"message": "Invalid API Key", "code": "invalid_api_key"}})
    result = await GroqBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_empty_completion_is_transient_failure():
    rec = Recorder(body={"choices": [{"message": {"content": ""}}]})
    result = await GroqBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result == InvokeFailure(kind=FailureKind.TRANSIENT, raw="empty_response")


@pytest.mark.asyncio
async def test_network_errors_never_escape_invoke():
    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Temporary failure in name resolution", request=request)

    result = await GroqBackend(transport=_transport(boom)).invoke(_conversation(), "k")

    assert isinstance(result, InvokeFailure)
    assert result.kind is FailureKind.TRANSIENT


@pytest.mark.asyncio
async def test_malformed_json_is_transient():
    rec = Recorder(content=b"not json at all")
    result = await GroqBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.TRANSIENT


@pytest.mark.asyncio
async def test_openrouter_sends_origin_headers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PUBLIC_APP_ORIGIN", "https://faq.example.test")
    rec = Recorder(body={"choices": [{"message": {"content": "hi"}}]})
    backend = OpenRouterBackend(transport=_transport(rec))

    result = await backend.invoke(_conversation(), "or-key")

    assert result == InvokeSuccess(text="hi")
    req = rec.requests[0]
    assert req.url == "https://openrouter.ai/api/v1/chat/completions"
    assert req.headers["http-referer"] == "https://faq.example.test"
    assert req.headers["x-title"]
    assert rec.last_json["model"] == "openai/gpt-4o-mini"


@pytest.mark.asyncio
async def test_openrouter_joins_list_shaped_content():
    rec = Recorder(body={"choices": [{"message": {"content": [
        {"type": "text", "text": "Enrollment "},
        {"type": "text", "text": "closes June 30."},
        "ignored",
    ]}}]})
    backend = OpenRouterBackend(transport=_transport(rec))

    result = await backend.invoke(_conversation(), "or-key")

    assert result == InvokeSuccess(text="Enrollment closes June 30.")


class _OddContentBackend(ChatBackend):
    provider_name = "odd"

    async def _complete(self, conversation, credential):
        return {"parts": ["not", "text"]}

    async def stream_chat(self, conversation, credential):
        yield ""


@pytest.mark.asyncio
async def test_invoke_classifies_non_text_completion_as_transient():
    result = await _OddContentBackend().invoke(_conversation(), "k")

    assert isinstance(result, InvokeFailure)
    assert result.kind is FailureKind.TRANSIENT
    assert "dict" in result.raw


@pytest.mark.asyncio
async def test_openai_compatible_stream_skips_noise():
    lines = [
        "",
        ": keepalive",
        "event: meta",
        "data: {bad json",
        "data:   ",
        "data: " + json.dumps({"choices": [{"text": "Hello "}]}),
        "data: " + json.dumps({"choices": [{"delta": {"content": "world"}}]}),
        "data: [DONE]",
        "data: " + json.dumps({"choices": [{"delta": {"content": "ignored"}}]}),
    ]
    rec = Recorder(content=("\n".join(lines) + "\n").encode())
    backend = GroqBackend(transport=_transport(rec))

    tokens = [t async for t in backend.stream_chat(_conversation(), "k")]

    assert "".join(tokens) == "Hello world"
    assert rec.last_json["stream"] is True


@pytest.mark.asyncio
async def test_openai_compatible_stream_error_raises_classifiable_error():
    rec = Recorder(status=429, body={"error": {"message": "Too many requests"}})
    backend = GroqBackend(transport=_transport(rec))

    with pytest.raises(BackendHTTPError) as info:
        async for _ in backend.stream_chat(_conversation(), "k"):
            pass
    assert info.value.status_code == 429


# ---- Gemini ----

@pytest.mark.asyncio
async def test_gemini_request_shape_and_parsing():
    rec = Recorder(body={"candidates": [{"content": {"parts": [{"text": "June "}, {"text": "30."}]}}]})
    backend = GeminiBackend(transport=_transport(rec))

    result = await backend.invoke(_conversation(), "AIza-1")

    assert result == InvokeSuccess(text="June 30.")
    req = rec.requests[0]
    assert req.url.path == "/v1beta/models/gemini-2.0-flash-lite:generateContent"
    assert req.headers["x-goog-api-key"] == "AIza-1"
    body = rec.last_json
    assert body["systemInstruction"] == {"parts": [{"text": "You are the SBO assistant."}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][-1]["parts"][0]["text"] == "And the deadline?"
    assert body["generationConfig"]["maxOutputTokens"] == 1024
    assert body["generationConfig"]["topP"] == 0.9


@pytest.mark.asyncio
async def test_gemini_resource_exhausted_is_rate_limited():
    rec = Recorder(status=429, body={"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}})
    result = await GeminiBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.RATE_LIMITED


@pytest.mark.asyncio
async def test_gemini_bad_key_400_is_auth_failure():
    rec = Recorder(status=400, body={"error": {
        "code": 400,
        "message": "API key not valid. Please pass a valid API key.",
        "status": "INVALID_ARGUMENT",
    }})
    result = await GeminiBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_gemini_no_candidates_is_transient():
    rec = Recorder(body={"candidates": []})
    result = await GeminiBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.TRANSIENT


@pytest.mark.asyncio
async def test_gemini_stream_parses_sse_chunks():
    chunk = lambda t: "data: " + json.dumps({"candidates": [{"content": {"parts": [{"text": t}]}}]})
    rec = Recorder(content=("\n".join([chunk("Hel"), "", chunk("lo")]) + "\n").encode())
    backend = GeminiBackend(transport=_transport(rec))

    tokens = [t async for t in backend.stream_chat(_conversation(), "k")]

    assert tokens == ["Hel", "lo"]
    assert rec.requests[0].url.path.endswith(":streamGenerateContent")
    assert rec.requests[0].url.params["alt"] == "sse"


# ---- Cohere ----

@pytest.mark.asyncio
async def test_cohere_request_shape_and_parsing():
    rec = Recorder(body={"text": "The deadline is June 30.", "generation_id": "g"})
    backend = CohereBackend(transport=_transport(rec))

    result = await backend.invoke(_conversation(), "co-1")

    assert result == InvokeSuccess(text="The deadline is June 30.")
    req = rec.requests[0]
    assert req.url == "https://api.cohere.com/v1/chat"
    assert req.headers["authorization"] == "Bearer co-1"
    body = rec.last_json
    assert body["message"] == "And the deadline?"
    assert body["preamble"] == "You are the SBO assistant."
    assert body["chat_history"] == [
        {"role": "USER", "message": "When is enrollment?"},
        {"role": "CHATBOT", "message": "Enrollment opens in June."},
    ]
    assert body["model"] == "command-r7b-12-2024"
    assert body["p"] == 0.9


@pytest.mark.asyncio
async def test_cohere_unauthorized_message_is_auth_failure():
    rec = Recorder(status=401, body={"message": "invalid api token"})
    result = await CohereBackend(transport=_transport(rec)).invoke(_conversation(), "k")

    assert result.kind is FailureKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_cohere_stream_reads_text_generation_events():
    events = [
        {"event_type": "stream-start", "generation_id": "g"},
        {"event_type": "text-generation", "text": "June"},
        {"event_type": "text-generation", "text": " 30"},
        {"event_type": "stream-end", "finish_reason": "COMPLETE"},
    ]
    rec = Recorder(content=("\n".join(json.dumps(e) for e in events) + "\n").encode())
    backend = CohereBackend(transport=_transport(rec))

    tokens = [t async for t in backend.stream_chat(_conversation(), "k")]

    assert tokens == ["June", " 30"]
    assert rec.last_json["stream"] is True


# ---- Mock & factory ----

@pytest.mark.asyncio
async def test_mock_echoes_and_plays_scripts():
    backend = MockBackend(script={"k1": [RuntimeError("rate limit"), "second"]})

    echo = await backend.invoke(_conversation(), "other")
    first = await backend.invoke(_conversation(), "k1")
    second = await backend.invoke(_conversation(), "k1")
    third = await backend.invoke(_conversation(), "k1")

    assert echo == InvokeSuccess(text="And the deadline?")
    assert first.kind is FailureKind.RATE_LIMITED
    assert second == third == InvokeSuccess(text="second")
    assert backend.calls_for("k1") == 3


@pytest.mark.parametrize("name, cls", [
    ("groq", GroqBackend),
    ("Gemini", GeminiBackend),
    ("google", GeminiBackend),
    ("cohere", CohereBackend),
    ("router", OpenRouterBackend),
    ("test", MockBackend),
])
def test_factory_builds_adapter_by_tag(name, cls):
    backend = get_backend(name, timeout=5.0)
    assert isinstance(backend, cls)
    assert backend.timeout == 5.0


def test_factory_rejects_unknown_backend():
    assert normalize_backend_name("anthropic-v0") is None
    with pytest.raises(ValueError):
        get_backend("anthropic-v0")
