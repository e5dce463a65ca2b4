import sys
import os
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import mockmate.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Default: offline generation backend, no artificial pacing
os.environ.setdefault("AI_PROVIDER_GENERATION", "mock")
os.environ.setdefault("OPENING_CHUNK_DELAY_SECONDS", "0")

from mockmate import config  # noqa: E402


@pytest.fixture(autouse=True)
def _quiet_side_channels(monkeypatch: pytest.MonkeyPatch):
    # No outbound mirror/alert traffic unless a test opts in
    monkeypatch.setattr(config, "RESULTS_PERSIST_URL", "")
    monkeypatch.setattr(config, "ALERT_WEBHOOK_URL", "")
    monkeypatch.setattr(config, "OPENING_CHUNK_DELAY_SECONDS", 0.0)
