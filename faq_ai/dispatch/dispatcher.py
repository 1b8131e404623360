from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Union

import httpx

from faq_ai.config import Settings
from faq_ai.dispatch.health import Cooldowns
from faq_ai.dispatch.pool import Clock, Resource, ResourcePool
from faq_ai.metrics import (
    BACKEND_CALL_SECONDS,
    DISPATCH_ATTEMPTS_TOTAL,
    DISPATCH_OUTCOMES_TOTAL,
    RESOURCE_QUARANTINES_TOTAL,
)
from faq_ai.prompts import SYSTEM_PREAMBLE, build_conversation
from faq_ai.providers.base import (
    ChatBackend,
    Conversation,
    FailureKind,
    InvokeFailure,
    InvokeResult,
    InvokeSuccess,
    failure_from_exception,
)
from faq_ai.providers.factory import get_backend

logger = logging.getLogger("faq_ai.dispatch")


class DegradeReason(str, enum.Enum):
    NO_RESOURCES = "no_resources"
    POOL_EXHAUSTED = "pool_exhausted"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


DEGRADED_MESSAGES: Dict[DegradeReason, str] = {
    DegradeReason.NO_RESOURCES: (
        "The AI service is currently unavailable because no AI providers are configured. "
        "Please use FAQ mode or contact the administrator."
    ),
    DegradeReason.POOL_EXHAUSTED: (
        "The AI service is currently unavailable. All providers are rate-limited or temporarily disabled. "
        "Please try again later or use FAQ mode."
    ),
    DegradeReason.ATTEMPTS_EXHAUSTED: (
        "I apologize, but all AI services are currently unavailable. "
        "Please try again later or use FAQ mode for instant answers."
    ),
}


@dataclass(frozen=True)
class Success:
    text: str
    resource_id: str = ""
    backend: str = ""
    attempts: int = 1


@dataclass(frozen=True)
class Degraded:
    """User-safe fallback text; a value, not an error."""

    message: str
    reason: DegradeReason
    attempts: int = 0

    @property
    def text(self) -> str:
        return self.message


DispatchOutcome = Union[Success, Degraded]


class Dispatcher:
    """Routes a conversation to the first healthy backend credential that answers.

    Each ``send`` owns its attempt loop: select a resource, invoke its adapter
    under the per-call timeout, quarantine it on rate-limit or auth failures,
    and move on until a completion arrives, the pool has nothing eligible, or
    ``max_attempts`` invocations have been spent.
    """

    def __init__(
        self,
        pool: ResourcePool,
        backends: Mapping[str, ChatBackend],
        *,
        cooldowns: Cooldowns = Cooldowns(),
        max_attempts: int = 3,
        timeout: float = 30.0,
        preamble: str = SYSTEM_PREAMBLE,
        history_limit: int = 20,
        messages: Optional[Mapping[DegradeReason, str]] = None,
    ):
        self.pool = pool
        self.backends: Dict[str, ChatBackend] = dict(backends)
        self.cooldowns = cooldowns
        self.max_attempts = max(1, int(max_attempts))
        self.timeout = timeout
        self.preamble = preamble
        self.history_limit = history_limit
        self.messages: Dict[DegradeReason, str] = {**DEGRADED_MESSAGES, **dict(messages or {})}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        backends: Optional[Mapping[str, ChatBackend]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "Dispatcher":
        """Build the pool and adapters from configuration.

        ``backends`` overrides adapters by tag; any other configured backend gets
        a fresh adapter from the factory.
        """
        pool = ResourcePool(clock=clock)
        adapters: Dict[str, ChatBackend] = dict(backends or {})
        for bc in settings.backends:
            if bc.name not in adapters:
                adapters[bc.name] = get_backend(bc.name, model=bc.model, transport=transport, **settings.adapter_params())
            for credential in bc.credentials:
                pool.add(bc.name, credential, bc.priority)
        logger.info(json.dumps({
            "event": "providers_configured",
            "backends": [
                {"name": bc.name, "priority": bc.priority, "keys": len(bc.credentials), "model": adapters[bc.name].model}
                for bc in settings.backends
            ],
            "resources": len(pool),
            "maxAttempts": settings.max_attempts,
        }))
        return cls(
            pool,
            adapters,
            cooldowns=settings.cooldowns,
            max_attempts=settings.max_attempts,
            timeout=settings.timeout,
            preamble=settings.preamble,
            history_limit=settings.history_limit,
        )

    def build_conversation(self, user_message: str, history: Optional[Iterable[Any]] = None) -> Conversation:
        return build_conversation(user_message, history, preamble=self.preamble, history_limit=self.history_limit)

    def snapshot(self) -> List[Dict[str, Any]]:
        return self.pool.snapshot()

    def backends_info(self) -> List[Dict[str, Any]]:
        return [{"name": name, "model": b.model} for name, b in self.backends.items()]

    async def _invoke(self, resource: Resource, conversation: Conversation) -> InvokeResult:
        backend = self.backends.get(resource.backend_name)
        if backend is None:
            return InvokeFailure(kind=FailureKind.TRANSIENT, raw=f"no adapter for {resource.backend_name}")
        t0 = time.perf_counter()
        try:
            return await asyncio.wait_for(backend.invoke(conversation, resource.credential), timeout=self.timeout)
        except Exception as e:
            # Timeouts land here; adapters themselves never raise
            return failure_from_exception(e)
        finally:
            BACKEND_CALL_SECONDS.labels(backend=resource.backend_name).observe(time.perf_counter() - t0)

    def _record_failure(
        self, resource: Resource, failure: InvokeFailure, attempt: int, request_id: Optional[str]
    ) -> None:
        DISPATCH_ATTEMPTS_TOTAL.labels(backend=resource.backend_name, result=failure.kind.value).inc()
        logger.warning(json.dumps({
            "event": "dispatch_failure",
            "requestId": request_id,
            "resource": resource.id,
            "backend": resource.backend_name,
            "attempt": attempt,
            "kind": failure.kind.value,
            "status": failure.status,
            "error": failure.raw[:256],
        }))
        seconds = self.cooldowns.cooldown_for(failure.kind)
        if seconds is not None:
            self.pool.quarantine(resource, seconds, failure.kind)
            RESOURCE_QUARANTINES_TOTAL.labels(backend=resource.backend_name, kind=failure.kind.value).inc()

    def _record_success(self, resource: Resource, attempt: int, request_id: Optional[str]) -> None:
        DISPATCH_ATTEMPTS_TOTAL.labels(backend=resource.backend_name, result="success").inc()
        DISPATCH_OUTCOMES_TOTAL.labels(outcome="success", reason="").inc()
        logger.info(json.dumps({
            "event": "dispatch_success",
            "requestId": request_id,
            "resource": resource.id,
            "backend": resource.backend_name,
            "attempt": attempt,
        }))

    def _degrade(self, reason: DegradeReason, attempts: int, request_id: Optional[str]) -> Degraded:
        DISPATCH_OUTCOMES_TOTAL.labels(outcome="degraded", reason=reason.value).inc()
        logger.warning(json.dumps({
            "event": "dispatch_degraded",
            "requestId": request_id,
            "reason": reason.value,
            "attempts": attempts,
            "resources": len(self.pool),
        }))
        return Degraded(message=self.messages[reason], reason=reason, attempts=attempts)

    async def send(
        self,
        user_message: str,
        history: Optional[Iterable[Any]] = None,
        *,
        request_id: Optional[str] = None,
    ) -> DispatchOutcome:
        conversation = self.build_conversation(user_message, history)
        if len(self.pool) == 0:
            return self._degrade(DegradeReason.NO_RESOURCES, 0, request_id)

        tried: List[str] = []
        for attempt in range(1, self.max_attempts + 1):
            resource = self.pool.select_next(avoid=tried)
            if resource is None:
                return self._degrade(DegradeReason.POOL_EXHAUSTED, attempt - 1, request_id)
            tried.append(resource.id)
            logger.info(json.dumps({
                "event": "dispatch_attempt",
                "requestId": request_id,
                "resource": resource.id,
                "backend": resource.backend_name,
                "attempt": attempt,
            }))
            result = await self._invoke(resource, conversation)
            if isinstance(result, InvokeSuccess):
                self._record_success(resource, attempt, request_id)
                return Success(text=result.text, resource_id=resource.id, backend=resource.backend_name, attempts=attempt)
            self._record_failure(resource, result, attempt, request_id)

        return self._degrade(DegradeReason.ATTEMPTS_EXHAUSTED, self.max_attempts, request_id)

    async def reply(
        self,
        user_message: str,
        history: Optional[Iterable[Any]] = None,
        *,
        request_id: Optional[str] = None,
    ) -> str:
        """Displayable text for a message: a completion or a degradation notice."""
        outcome = await self.send(user_message, history, request_id=request_id)
        return outcome.text

    async def stream(
        self,
        user_message: str,
        history: Optional[Iterable[Any]] = None,
        *,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Stream a completion, failing over only until the first chunk is delivered.

        A failure after output has started ends the stream without a retry, since
        the caller has already shown partial text. Exhaustion yields the
        degradation message as a single chunk.
        """
        conversation = self.build_conversation(user_message, history)
        if len(self.pool) == 0:
            yield self._degrade(DegradeReason.NO_RESOURCES, 0, request_id).text
            return

        tried: List[str] = []
        for attempt in range(1, self.max_attempts + 1):
            resource = self.pool.select_next(avoid=tried)
            if resource is None:
                yield self._degrade(DegradeReason.POOL_EXHAUSTED, attempt - 1, request_id).text
                return
            tried.append(resource.id)
            backend = self.backends.get(resource.backend_name)
            if backend is None:
                self._record_failure(
                    resource,
                    InvokeFailure(kind=FailureKind.TRANSIENT, raw=f"no adapter for {resource.backend_name}"),
                    attempt,
                    request_id,
                )
                continue

            emitted = False
            chunks = backend.stream_chat(conversation, resource.credential).__aiter__()
            try:
                while True:
                    try:
                        chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.timeout)
                    except StopAsyncIteration:
                        break
                    if chunk:
                        emitted = True
                        yield chunk
            except Exception as e:
                failure = failure_from_exception(e)
                if emitted:
                    logger.warning(json.dumps({
                        "event": "dispatch_stream_interrupted",
                        "requestId": request_id,
                        "resource": resource.id,
                        "kind": failure.kind.value,
                        "error": failure.raw[:256],
                    }))
                    return
                self._record_failure(resource, failure, attempt, request_id)
                continue
            finally:
                aclose = getattr(chunks, "aclose", None)
                if aclose is not None:
                    await aclose()

            if emitted:
                self._record_success(resource, attempt, request_id)
                return
            self._record_failure(
                resource, InvokeFailure(kind=FailureKind.TRANSIENT, raw="empty_response"), attempt, request_id
            )

        yield self._degrade(DegradeReason.ATTEMPTS_EXHAUSTED, self.max_attempts, request_id).text
