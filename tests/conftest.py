import os
import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import faq_ai.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Injectable clock for pool/dispatcher tests; time only moves when advanced."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


CREDENTIAL_ENV_PREFIXES = ("GEMINI", "GOOGLE", "COHERE", "GROQ", "OPENROUTER")


@pytest.fixture
def clean_ai_env(monkeypatch: pytest.MonkeyPatch):
    """Remove any AI credentials/config inherited from the developer's shell."""
    for name in list(os.environ):
        if name.startswith("AI_") or any(name.startswith(p + "_") for p in CREDENTIAL_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
