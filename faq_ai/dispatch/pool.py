from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, Iterator, List, Optional, Tuple

from faq_ai.dispatch import health
from faq_ai.dispatch.health import AVAILABLE, HealthState, Quarantined
from faq_ai.providers.base import FailureKind

logger = logging.getLogger("faq_ai.dispatch.pool")

Clock = Callable[[], float]


@dataclass
class Resource:
    """One credential bound to one backend; the unit of health tracking."""

    backend_name: str
    credential: str = field(repr=False)
    priority: int = 1
    index: int = 0
    health: HealthState = AVAILABLE
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.backend_name}#{self.index}"


class ResourcePool:
    """Registered resources, their health, and the per-priority rotation cursors.

    Selection and quarantine are plain synchronous calls, so under asyncio a
    read-modify-write of a resource's health never spans a suspension point.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock: Clock = clock or time.time
        self._resources: List[Resource] = []
        self._by_key: Dict[Tuple[str, str], Resource] = {}
        self._cursors: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources))

    def now(self) -> float:
        return self._clock()

    def get(self, resource_id: str) -> Optional[Resource]:
        return next((r for r in self._resources if r.id == resource_id), None)

    def register(self, resource: Resource) -> Resource:
        """Add a resource; a repeated (backend, credential) pair returns the first registration.

        A resource whose id is already taken is renumbered after the credentials
        its backend already has, so several keys of one backend can be
        registered without choosing indexes up front.
        """
        key = (resource.backend_name, resource.credential)
        existing = self._by_key.get(key)
        if existing is not None:
            return existing
        if self.get(resource.id) is not None:
            index = sum(1 for r in self._resources if r.backend_name == resource.backend_name)
            while self.get(f"{resource.backend_name}#{index}") is not None:
                index += 1
            resource.index = index
            resource.id = f"{resource.backend_name}#{index}"
        self._by_key[key] = resource
        self._resources.append(resource)
        return resource

    def add(self, backend_name: str, credential: str, priority: int = 1) -> Resource:
        """Register a credential, numbering it after the backend's existing credentials."""
        index = sum(1 for r in self._resources if r.backend_name == backend_name)
        return self.register(Resource(backend_name=backend_name, credential=credential, priority=priority, index=index))

    def _refresh(self, now: float) -> List[Resource]:
        eligible: List[Resource] = []
        for r in self._resources:
            refreshed = health.refresh(r.health, now)
            if refreshed is not r.health:
                r.health = refreshed
                logger.info(json.dumps({"event": "resource_recovered", "resource": r.id, "backend": r.backend_name}))
            if health.is_eligible(r.health, now):
                eligible.append(r)
        return eligible

    def select_next(self, avoid: Collection[str] = ()) -> Optional[Resource]:
        """Highest-priority eligible resource, rotating among equal priorities.

        Resources whose id is in ``avoid`` are only returned when nothing else is
        eligible. Returns None when every resource is quarantined.
        """
        eligible = self._refresh(self.now())
        if not eligible:
            return None
        preferred = [r for r in eligible if r.id not in avoid] or eligible
        top = min(r.priority for r in preferred)
        candidates = {r.id for r in preferred if r.priority == top}
        tier = [r for r in self._resources if r.priority == top]
        start = self._cursors.get(top, 0) % len(tier)
        for offset in range(len(tier)):
            pos = (start + offset) % len(tier)
            if tier[pos].id in candidates:
                self._cursors[top] = pos + 1
                return tier[pos]
        return None

    def quarantine(self, resource: Resource, seconds: float, reason: FailureKind) -> HealthState:
        now = self.now()
        resource.health = health.quarantine(resource.health, now, seconds, reason)
        until = resource.health.until if isinstance(resource.health, Quarantined) else None
        logger.warning(json.dumps({
            "event": "resource_quarantined",
            "resource": resource.id,
            "backend": resource.backend_name,
            "reason": reason.value,
            "seconds": seconds,
            "until": until,
        }))
        return resource.health

    def snapshot(self) -> List[Dict[str, Any]]:
        """Per-resource health view for diagnostics; never mutates state."""
        now = self.now()
        out: List[Dict[str, Any]] = []
        for r in self._resources:
            limited = not health.is_eligible(r.health, now)
            state = r.health if isinstance(r.health, Quarantined) else None
            out.append({
                "id": r.id,
                "backendName": r.backend_name,
                "index": r.index,
                "priority": r.priority,
                "limited": limited,
                "resetTime": state.until if (limited and state) else None,
                "reason": state.reason.value if (limited and state) else None,
            })
        return out
