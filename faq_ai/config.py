import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from faq_ai.dispatch.health import Cooldowns
from faq_ai.prompts import SYSTEM_PREAMBLE
from faq_ai.providers.factory import normalize_backend_name


DEFAULT_BACKENDS = "gemini,cohere,groq,openrouter"
DEFAULT_PRIORITIES: Dict[str, int] = {"gemini": 1, "cohere": 2, "groq": 3, "openrouter": 4, "mock": 99}

# Environment prefixes searched for each backend's credentials, in order
CREDENTIAL_PREFIXES: Dict[str, Tuple[str, ...]] = {
    "gemini": ("GEMINI", "GOOGLE"),
    "cohere": ("COHERE",),
    "groq": ("GROQ",),
    "openrouter": ("OPENROUTER",),
}
MAX_NUMBERED_KEYS = 20


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name) or default).strip()


def _env_first(env: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = _env_str(env, name)
        if value:
            return value
    return ""


def _env_int(env: Mapping[str, str], names: Tuple[str, ...], default: int) -> int:
    try:
        return int(_env_first(env, *names) or default)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], names: Tuple[str, ...], default: float) -> float:
    try:
        return float(_env_first(env, *names) or default)
    except ValueError:
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = _env_str(env, name, "1" if default else "0").lower()
    return v in ("1", "true", "yes", "on")


def discover_credentials(backend: str, env: Mapping[str, str]) -> List[str]:
    """Collect a backend's API keys from the environment, deduplicated in first-seen order.

    For each prefix: ``<P>_API_KEYS`` (comma separated), ``<P>_API_KEY`` and
    ``<P>_API_KEY_1`` .. ``<P>_API_KEY_20``.
    """
    keys: List[str] = []
    for prefix in CREDENTIAL_PREFIXES.get(backend, ()):
        keys.extend(k.strip() for k in _env_str(env, f"{prefix}_API_KEYS").split(","))
        keys.append(_env_str(env, f"{prefix}_API_KEY"))
        for n in range(1, MAX_NUMBERED_KEYS + 1):
            keys.append(_env_str(env, f"{prefix}_API_KEY_{n}"))
    return list(dict.fromkeys(k for k in keys if k))


@dataclass(frozen=True)
class BackendConfig:
    name: str
    priority: int
    model: Optional[str] = None
    credentials: Tuple[str, ...] = field(default=(), repr=False)


@dataclass(frozen=True)
class Settings:
    backends: Tuple[BackendConfig, ...] = ()
    cooldowns: Cooldowns = Cooldowns()
    max_attempts: int = 3
    timeout: float = 30.0
    max_tokens: int = 1024
    temperature: float = 0.7
    top_p: float = 0.9
    history_limit: int = 20
    preamble: str = SYSTEM_PREAMBLE
    log_level: str = "INFO"

    def adapter_params(self) -> Dict[str, float]:
        """Parameters forwarded verbatim to every backend adapter."""
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "timeout": self.timeout,
        }


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read dispatch configuration from the environment (once, at startup)."""
    env = os.environ if env is None else env

    names: List[str] = []
    for raw in _env_str(env, "AI_PROVIDERS", DEFAULT_BACKENDS).split(","):
        name = normalize_backend_name(raw)
        if name and name != "mock" and name not in names:
            names.append(name)

    backends: List[BackendConfig] = []
    for name in names:
        creds = discover_credentials(name, env)
        if not creds:
            continue
        backends.append(BackendConfig(
            name=name,
            priority=_env_int(env, (f"AI_PRIORITY_{name.upper()}",), DEFAULT_PRIORITIES[name]),
            model=_env_str(env, f"{name.upper()}_MODEL") or None,
            credentials=tuple(creds),
        ))
    if _env_bool(env, "AI_MOCK_ENABLED", False):
        backends.append(BackendConfig(
            name="mock",
            priority=_env_int(env, ("AI_PRIORITY_MOCK",), DEFAULT_PRIORITIES["mock"]),
            model=_env_str(env, "MOCK_MODEL") or None,
            credentials=("mock-key",),
        ))

    return Settings(
        backends=tuple(backends),
        cooldowns=Cooldowns(
            rate_limit=_env_float(env, ("AI_COOLDOWN_RATE_LIMIT_SECONDS", "GROQ_KEY_COOLDOWN_SECONDS"), 3600.0),
            auth=_env_float(env, ("AI_COOLDOWN_AUTH_SECONDS",), 86400.0),
        ),
        max_attempts=max(1, _env_int(env, ("AI_MAX_ATTEMPTS", "GROQ_MAX_ATTEMPTS"), 3)),
        timeout=_env_float(env, ("AI_HTTP_TIMEOUT_SECONDS",), 30.0),
        max_tokens=_env_int(env, ("AI_CHAT_MAX_TOKENS", "GROQ_MAX_TOKENS"), 1024),
        temperature=_env_float(env, ("AI_CHAT_TEMPERATURE",), 0.7),
        top_p=_env_float(env, ("AI_CHAT_TOP_P",), 0.9),
        history_limit=_env_int(env, ("AI_CHAT_HISTORY_LIMIT",), 20),
        preamble=_env_str(env, "AI_SYSTEM_PREAMBLE") or SYSTEM_PREAMBLE,
        log_level=_env_str(env, "LOG_LEVEL", "INFO").upper(),
    )
