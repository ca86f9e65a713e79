import sys
import os
from pathlib import Path

# Ensure project root is on sys.path for `import app.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Default: offline provider, in-memory store, no artificial waits unless a test opts in
os.environ.setdefault("AI_PROVIDER_CHAT", "mock")
os.environ.setdefault("RECORD_STORE", "memory")
os.environ.setdefault("AI_MIN_REQUEST_INTERVAL_SECONDS", "0")
os.environ.setdefault("CHAT_MIN_RESPONSE_DELAY_SECONDS", "0")

import pytest

from app.chat.feed import ChangeFeedSubscriber
from app.chat.orchestrator import SessionOrchestrator
from app.chat.repository import SessionRepository
from app.config import Settings
from app.providers.mock import MockCompletionClient
from app.store.memory import MemoryRecordStore


@pytest.fixture()
def settings() -> Settings:
    return Settings(min_response_delay=0.0, min_request_interval=0.0, priming_prompt="Be kind.")


@pytest.fixture()
def make_orchestrator(settings):
    """Build an orchestrator wired to an in-memory store and the mock client.

    Pieces can be swapped per test via keyword arguments.
    """

    def _make(store=None, completion=None, feed=None, settings_override=None):
        cfg = settings_override or settings
        store = store or MemoryRecordStore()
        repository = SessionRepository(store, priming_text=cfg.priming_prompt)
        completion = completion or MockCompletionClient(min_interval=cfg.min_request_interval)
        feed = feed or ChangeFeedSubscriber(store)
        return SessionOrchestrator(repository, completion, feed, cfg)

    return _make


class InspectableMemoryStore(MemoryRecordStore):
    """Memory store that exposes its open change streams to assertions."""

    def open_streams(self, table):
        return list(self._streams.get(table, []))


@pytest.fixture()
def inspectable_store() -> InspectableMemoryStore:
    return InspectableMemoryStore()
