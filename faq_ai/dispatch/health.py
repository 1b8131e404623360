from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from faq_ai.providers.base import FailureKind


@dataclass(frozen=True)
class Available:
    """Resource may be selected."""

    def __repr__(self) -> str:
        return "Available"


@dataclass(frozen=True)
class Quarantined:
    """Resource is skipped by selection until ``until`` (epoch seconds) has passed."""

    until: float
    reason: FailureKind = FailureKind.RATE_LIMITED


HealthState = Union[Available, Quarantined]

AVAILABLE = Available()


@dataclass(frozen=True)
class Cooldowns:
    rate_limit: float = 3600.0
    auth: float = 86400.0

    def cooldown_for(self, kind: FailureKind) -> Optional[float]:
        """Quarantine duration for a failure kind, or None when the failure is not penalized."""
        if kind is FailureKind.RATE_LIMITED:
            return self.rate_limit
        if kind is FailureKind.AUTH_FAILED:
            return self.auth
        return None


def is_eligible(state: HealthState, now: float) -> bool:
    if isinstance(state, Quarantined):
        return now > state.until
    return True


def refresh(state: HealthState, now: float) -> HealthState:
    """Collapse a lapsed quarantine back to AVAILABLE; any other state is returned as-is."""
    if isinstance(state, Quarantined) and now > state.until:
        return AVAILABLE
    return state


def quarantine(state: HealthState, now: float, seconds: float, reason: FailureKind) -> Quarantined:
    """Open a quarantine window of ``seconds`` starting at ``now``.

    The new window replaces the current one rather than extending it, except that
    an active auth quarantine is never shortened by a rate-limit signal.
    """
    until = now + max(0.0, float(seconds))
    if (
        isinstance(state, Quarantined)
        and state.reason is FailureKind.AUTH_FAILED
        and reason is not FailureKind.AUTH_FAILED
        and not is_eligible(state, now)
        and state.until > until
    ):
        return state
    return Quarantined(until=until, reason=reason)
