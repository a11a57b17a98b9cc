"""Shared fixtures: fake backend, session provider, local store, settings"""

import pytest

from casesync.config import Settings
from casesync.db import LocalStore, reset_engine

from .fakes import FakeBackend, StaticSessions, make_remote, BASE_URL, API_KEY


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sessions():
    return StaticSessions()


@pytest.fixture
def remote(backend, sessions):
    return make_remote(backend, sessions)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        supabase_url=BASE_URL,
        supabase_anon_key=API_KEY,
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        blob_dir=str(tmp_path / "blobs"),
    )


@pytest.fixture
def store(settings):
    yield LocalStore(settings.database_url)
    reset_engine()
