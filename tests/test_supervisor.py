import pytest

from sources.errors import ConcurrentSyncConflict
from mangascope_app.sync.state import SyncStateStore
from mangascope_app.sync.supervisor import SyncSupervisor, validate

from test_sync_catalog import FakeCatalog, doc


class FakeRegistry:
    def __init__(self, canonical):
        self.canonical = canonical


def make_supervisor(db, canonical=None, **kwargs):
    registry = FakeRegistry(canonical or FakeCatalog([doc(1)]))
    state = SyncStateStore(db)
    return SyncSupervisor(registry, state, session_scope=db, use_celery=False, **kwargs), state


def test_trigger_runs_in_background_thread_and_records_success(db):
    finished = []
    supervisor, state = make_supervisor(db, on_finished=finished.append)

    handle = supervisor.trigger("canonical", "full")
    report = handle.wait(timeout=10)

    assert handle.runner == "thread"
    assert handle.to_dict()["kind"] == "canonical"
    assert report.success
    assert finished == [report]
    assert state.get("canonical")["status"] == "idle"
    assert state.stored_count("canonical") == 1


def test_trigger_while_syncing_is_rejected(db):
    client = FakeCatalog([doc(1)])
    supervisor, state = make_supervisor(db, canonical=client)
    state.claim("canonical")

    with pytest.raises(ConcurrentSyncConflict):
        supervisor.trigger("canonical", "full")

    assert client.calls == []
    assert state.get("canonical")["status"] == "syncing"


def test_claim_is_exclusive_per_kind(db):
    state = SyncStateStore(db)
    state.claim("canonical")
    state.claim("aggregator")

    with pytest.raises(ConcurrentSyncConflict):
        state.claim("canonical")


def test_error_state_can_be_reclaimed(db):
    state = SyncStateStore(db)
    state.claim("canonical")
    state.fail("canonical", "boom")

    state.claim("canonical")

    status = state.get("canonical")
    assert status["status"] == "syncing"
    assert status["lastError"] is None


def test_crashing_runner_releases_the_row(db):
    state = SyncStateStore(db)
    supervisor = SyncSupervisor(object(), state, session_scope=db, use_celery=False)

    report = supervisor.run_inline("canonical", "incremental")

    assert not report.success
    status = state.get("canonical")
    assert status["status"] == "error"
    assert status["lastError"]


def test_failed_celery_dispatch_marks_error_and_raises(db, monkeypatch):
    supervisor, state = make_supervisor(db)
    supervisor._use_celery = True

    def broken_dispatch(kind, sync_type, options):
        raise ConnectionError("broker down")

    monkeypatch.setattr(supervisor, "_dispatch_celery", broken_dispatch)

    with pytest.raises(ConnectionError):
        supervisor.trigger("canonical", "incremental")

    assert state.get("canonical")["status"] == "error"


def test_celery_dispatch_returns_task_handle(db, monkeypatch):
    supervisor, _ = make_supervisor(db)
    supervisor._use_celery = True
    monkeypatch.setattr(supervisor, "_dispatch_celery", lambda kind, sync_type, options: "task-123")

    handle = supervisor.trigger("aggregator", "full", provider="mangapark")

    assert handle.runner == "celery"
    assert handle.task_id == "task-123"
    assert handle.wait() is None


def test_validate_rejects_unknown_values():
    with pytest.raises(ValueError):
        validate("everything", "full")
    with pytest.raises(ValueError):
        validate("canonical", "partial")


def test_status_covers_both_kinds(db):
    supervisor, _ = make_supervisor(db)

    status = supervisor.get_status()

    assert set(status) == {"canonical", "aggregator"}
    assert status["canonical"]["status"] == "idle"
    assert status["aggregator"]["storedCount"] == 0
