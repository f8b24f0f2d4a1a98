import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[3]
for path in (REPO_ROOT, REPO_ROOT / "packages" / "codex_store", REPO_ROOT / "packages" / "compressor_prompts"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

# The app module builds its scheduler at import time.
os.environ.setdefault("COMPRESSOR_AUTOSTART", "0")
os.environ.setdefault("COMPRESSOR_DATASTORE", "memory")
os.environ.setdefault("COMPRESSOR_TOKENIZER", "heuristic")
os.environ.setdefault("COMPRESSOR_ANALYTIC_PROVIDER", "mock")
os.environ.setdefault("COMPRESSOR_CREATIVE_PROVIDER", "mock")
os.environ.setdefault("COMPRESSOR_TEXT_SOURCE", "builtin")

import pytest

from services.compressor.errors import TransientRemoteError
from services.compressor.resilience import Resilience, RetryPolicy
from services.compressor.settings import Settings
from services.compressor.tokenizer import HeuristicTokenizer, TokenizerOracle


class FakeOracle(TokenizerOracle):
    """Fixed counts per text, heuristic for anything else. Records every call."""

    def __init__(self, counts=None, fail=False):
        self.counts = dict(counts or {})
        self.fail = fail
        self.calls = []

    async def token_count(self, text: str) -> int:
        self.calls.append(text)
        if self.fail:
            raise TransientRemoteError("tokenize", "oracle offline")
        if text in self.counts:
            return self.counts[text]
        return HeuristicTokenizer.count(text)


async def _no_sleep(_delay):
    return None


@pytest.fixture
def settings():
    return Settings()._replace(tokenizer="heuristic", autostart=False)


@pytest.fixture
def resilience():
    return Resilience(retry=RetryPolicy(max_attempts=3, base_delay=0.0), timeout=None, sleep=_no_sleep)


@pytest.fixture
def fake_oracle():
    return FakeOracle
