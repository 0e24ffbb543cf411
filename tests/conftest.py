"""Common test fixtures for Marlin Sync."""

import pytest

from marlin_sync.config import config
from marlin_sync.models.db_models import init_db
from marlin_sync.models.schema import Note, Space
from marlin_sync.services.sync_engine import SyncEngine
from marlin_sync.state import StatusBoard
from marlin_sync.storage.local_store import LocalStore
from tests.fakes import SPACE, InMemoryRemoteStore


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", tmp_path / "db" / "marlin.db")
    yield config


@pytest.fixture
def store(test_config):
    """A LocalStore on a fresh SQLite file."""
    engine = init_db(test_config.get_db_url())
    yield LocalStore(engine=engine)
    engine.dispose()


@pytest.fixture
def remote():
    """An in-memory remote with the test space's repository created."""
    fake = InMemoryRemoteStore()
    fake.create_repository(SPACE)
    fake.calls.clear()
    return fake


@pytest.fixture
def status():
    return StatusBoard()


@pytest.fixture
def space(store):
    return store.put_space(Space(name=SPACE, repo_name=f"{SPACE}.marlin"))


@pytest.fixture
def sleeps():
    """Delays requested by the engine's backoff."""
    return []


@pytest.fixture
def engine(store, remote, status, space, sleeps):
    """A SyncEngine with deterministic, zero-wait settings."""
    return SyncEngine(
        store,
        remote,
        status=status,
        batch_size=4,
        limited_batch_size=1,
        max_attempts=3,
        backoff_base=0,
        conflict_suffix="(conflicted copy)",
        trash_grace_period=0,
        sleep=sleeps.append,
    )


@pytest.fixture
def make_note(store, space):
    """Create a note in the test space through the store."""

    def _make(content: str = "Body", title: str = "Title", note_id: str = None) -> Note:
        kwargs = {"space": SPACE, "title": title, "content": content}
        if note_id:
            kwargs["id"] = note_id
        return store.upsert_note(Note(**kwargs))

    return _make
