"""Shared fixtures: a throwaway SQLite store and a runtime wired to stubs."""

import pytest

from core.runtime import IncidentRuntime
from core.store import IncidentStore
from stubs import RecordingNotifier


@pytest.fixture
def store(tmp_path):
    return IncidentStore(tmp_path / "guardian.db")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(store, notifier):
    return IncidentRuntime(store=store, notifiers=lambda project_id: notifier)
