import json

import pytest
from pydantic import ValidationError

from tddmachine.audit_logger import AuditLogger
from tddmachine.event_bus import EventBus, StepEvent
from tddmachine.step import Role


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[StepEvent] = []

    def dummy_subscriber(event: StepEvent):
        received_events.append(event)

    test_bus.subscribe(dummy_subscriber)

    test_bus.emit(
        event_type="attempt_failed",
        source="controller",
        payload={"attempt": 1, "kind": "ci"},
        step=3,
        role=Role.REFACTORER,
    )

    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "attempt_failed"
    assert event.source == "controller"
    assert event.step == 3
    assert event.role is Role.REFACTORER
    assert event.payload == {"attempt": 1, "kind": "ci"}

    # Auto-generated fields
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_run_level_events_have_no_step():
    event = EventBus().emit("run_finished", "controller")
    assert event.step is None
    assert event.role is None
    assert event.payload == {}


def test_step_numbers_start_at_one():
    with pytest.raises(ValidationError):
        StepEvent(event_type="step_started", source="controller", step=0)


def test_failing_subscriber_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("sink down")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    returned = bus.emit("step_committed", "controller", {})

    assert seen == [returned]


def test_audit_logger_appends_jsonl(tmp_path):
    bus = EventBus()
    path = tmp_path / "logs" / "events.jsonl"
    AuditLogger(path, bus)

    bus.emit("run_started", "controller", {"requested": 2}, step=1, role=Role.TESTER)
    bus.emit("run_finished", "controller", {"executed": 2})

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [l["event_type"] for l in lines] == ["run_started", "run_finished"]
    assert (lines[0]["step"], lines[0]["role"]) == (1, "tester")
    assert lines[1]["step"] is None
    assert lines[1]["payload"] == {"executed": 2}
