import shutil
from pathlib import Path

import pytest

from convo_sim import storage

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data(monkeypatch):
    """Wipe and re-init data-tests/ before every test, with no provider keys set."""
    for name in ("ANTHROPIC_API_KEY", "GEMINI_API_KEY", "ELEVENLABS_API_KEY",
                 "LLM_TIMEOUT", "HISTORY_WINDOW", "GENERATION_RETRIES"):
        monkeypatch.delenv(name, raising=False)
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    storage.init_storage(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it
