import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Deterministic auth/backends and fresh in-memory stores for every test."""
    from src.scriptgen.infrastructure.script_store import reset_script_store
    from src.scriptgen.infrastructure.usage_store import reset_usage_store
    from src.scriptgen.security.rate_limit import reset_in_flight
    from src.scriptgen.services.interaction_log import reset_interactions

    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("CLI_API_KEY", "test-cli-key")
    monkeypatch.setenv("SCRIPTGEN_MOCK_LLM", "1")
    for key in (
        "SCRIPTGEN_DAILY_LIMIT",
        "SCRIPTGEN_SPONSOR_DAILY_LIMIT",
        "SCRIPTGEN_DRAFT_PROVIDER",
        "SCRIPTGEN_REASONING_TAG",
        "SCRIPTGEN_MOCK_CHUNK_SIZE",
        "SCRIPTGEN_MOCK_DELAY_MS",
    ):
        monkeypatch.delenv(key, raising=False)

    reset_usage_store()
    reset_script_store()
    reset_in_flight()
    reset_interactions()
    yield
    reset_in_flight()
