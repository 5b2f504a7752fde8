import pytest

from tournament_dashboard.events import EventLog
from tournament_dashboard.exceptions import AlreadyActiveError
from tournament_dashboard.models import EventEntry, EventLevel, OperationKind, utcnow
from tournament_dashboard.progress import ProgressTracker, clamp_percent

from conftest import messages


def _entry(message, level=EventLevel.INFO):
    return EventEntry(timestamp=utcnow(), level=level, message=message)


def test_event_log_evicts_oldest_first():
    log = EventLog(capacity=3)
    for message in "ABCD":
        log.append(_entry(message))
    assert [e.message for e in log] == ["B", "C", "D"]
    assert len(log) == 3


def test_event_log_recent_returns_newest_in_order():
    log = EventLog(capacity=10)
    for message in "ABCDE":
        log.append(_entry(message))
    assert [e.message for e in log.recent(2)] == ["D", "E"]
    assert log.recent(0) == []
    log.clear()
    assert len(log) == 0


def test_event_log_rejects_zero_capacity():
    with pytest.raises(ValueError):
        EventLog(capacity=0)


def test_event_entry_requires_category_and_severity_together():
    from tournament_dashboard.errors import ErrorCategory

    with pytest.raises(ValueError):
        EventEntry(timestamp=utcnow(), level=EventLevel.ERROR, message="x", category=ErrorCategory.DATA)


def test_state_event_log_is_bounded(state):
    for i in range(state.config.max_events + 25):
        state.add_event(EventLevel.INFO, f"event {i}")
    assert len(state.events) == state.config.max_events
    assert messages(state)[-1] == f"event {state.config.max_events + 24}"


def test_clamp_percent_bounds():
    assert clamp_percent(150) == 100.0
    assert clamp_percent(-5) == 0.0
    assert clamp_percent(42.5) == 42.5


def test_second_start_raises_already_active():
    tracker = ProgressTracker()
    tracker.start_operation(OperationKind.DOWNLOAD, description="Downloading train")
    with pytest.raises(AlreadyActiveError) as excinfo:
        tracker.start_operation(OperationKind.DOWNLOAD)
    assert excinfo.value.kind == "download"
    # other kinds stay independent
    tracker.start_operation(OperationKind.TRAINING)
    assert tracker.active_kinds() == [OperationKind.DOWNLOAD, OperationKind.TRAINING]


def test_update_progress_clamps_and_never_moves_backwards():
    tracker = ProgressTracker()
    tracker.start_operation(OperationKind.TRAINING)
    assert tracker.update_progress(OperationKind.TRAINING, 150)
    assert tracker.get(OperationKind.TRAINING).percent == 100.0
    tracker.complete_operation(OperationKind.TRAINING)

    tracker.start_operation(OperationKind.TRAINING)
    tracker.update_progress(OperationKind.TRAINING, -5)
    assert tracker.get(OperationKind.TRAINING).percent == 0.0
    tracker.update_progress(OperationKind.TRAINING, 40)
    tracker.update_progress(OperationKind.TRAINING, 30)
    assert tracker.get(OperationKind.TRAINING).percent == 40.0


def test_update_on_idle_kind_is_ignored():
    tracker = ProgressTracker()
    assert not tracker.update_progress(OperationKind.PREDICTION, 50)
    assert not tracker.is_active(OperationKind.PREDICTION)


def test_stale_generation_is_rejected():
    tracker = ProgressTracker()
    first = tracker.start_operation(OperationKind.DOWNLOAD)
    tracker.complete_operation(OperationKind.DOWNLOAD)
    second = tracker.start_operation(OperationKind.DOWNLOAD)
    assert second == first + 1
    assert not tracker.update_progress(OperationKind.DOWNLOAD, 80, generation=first)
    assert tracker.get(OperationKind.DOWNLOAD).percent == 0.0
    assert tracker.update_progress(OperationKind.DOWNLOAD, 80, generation=second)


def test_metadata_is_kept_with_progress():
    tracker = ProgressTracker()
    tracker.start_operation(OperationKind.DOWNLOAD, description="Downloading train", unit="bytes")
    tracker.update_progress(OperationKind.DOWNLOAD, 25, current=25, total=100, source="mirror")
    slot = tracker.get(OperationKind.DOWNLOAD)
    assert slot.description == "Downloading train"
    assert (slot.current, slot.total, slot.unit) == (25, 100, "bytes")
    assert slot.extra == {"source": "mirror"}


def test_eta_is_estimated_from_elapsed_time():
    now = [100.0]
    tracker = ProgressTracker(clock=lambda: now[0])
    tracker.start_operation(OperationKind.TRAINING)
    tracker.update_progress(OperationKind.TRAINING, 25)
    now[0] = 110.0
    [snapshot] = tracker.snapshots()
    assert snapshot.eta_seconds == pytest.approx(30.0)


def test_complete_twice_emits_one_success_event(state):
    state.start_operation(OperationKind.UPLOAD)
    assert state.complete_operation(OperationKind.UPLOAD, "Submitted")
    assert not state.complete_operation(OperationKind.UPLOAD, "Submitted")
    assert messages(state).count("Submitted") == 1
    assert not state.any_active()


def test_fail_operation_classifies_and_returns_to_idle(state):
    state.start_operation(OperationKind.DOWNLOAD)
    error = state.fail_operation(OperationKind.DOWNLOAD, ConnectionError("connection reset by peer"))
    assert error is not None
    assert error.category.value == "NETWORK"
    assert not state.is_active(OperationKind.DOWNLOAD)
    assert state.events.recent(1)[0].category is error.category
    assert state.fail_operation(OperationKind.DOWNLOAD, ConnectionError("again")) is None
