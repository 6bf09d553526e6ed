import pytest

from tddmachine.ci_gate import CommandLog, GateReport
from tddmachine.step import Role
from tddmachine.step_log import LogError, StepLogEntry, StepLogger, StepLogReader

PLAN_DIR = ".tdd/plan"
LOG_DIR = ".tdd/logs"


def _pair(root):
    return StepLogger(root, PLAN_DIR, LOG_DIR), StepLogReader(root, PLAN_DIR, LOG_DIR)


def _entry(step: int, role: Role, status: str = "committed", **kw) -> StepLogEntry:
    return StepLogEntry(step_index=step, role=role, status=status, **kw)


def test_entry_round_trips_through_disk(tmp_path):
    writer, reader = _pair(tmp_path)
    gate = GateReport(commands=[
        CommandLog(name="fmt", argv=["ruff", "format", "."], status="pass", exit_code=0),
        CommandLog(name="check", argv=["ruff", "check", "."], status="fail", exit_code=1, stdout="E501"),
        CommandLog(name="test", argv=["pytest"], status="not-run"),
    ])
    written = _entry(
        1, Role.TESTER, status="failed", attempts=2,
        files_changed=["tests/test_calc.py"], runner=gate, failure="check failed",
    )

    path = writer.write(written)

    assert path.name == "step-001-tester-failed-01.json"
    loaded = reader.latest()
    assert loaded == written
    assert loaded.runner.get("test").status == "not-run"


def test_committed_records_are_never_overwritten(tmp_path):
    writer, _ = _pair(tmp_path)
    writer.write(_entry(1, Role.TESTER))
    with pytest.raises(LogError, match="overwrite"):
        writer.write(_entry(1, Role.TESTER))


def test_failed_records_get_fresh_slots(tmp_path):
    writer, reader = _pair(tmp_path)
    first = writer.write(_entry(2, Role.IMPLEMENTOR, status="failed"))
    second = writer.write(_entry(2, Role.IMPLEMENTOR, status="failed"))
    assert first.name.endswith("-failed-01.json")
    assert second.name.endswith("-failed-02.json")
    assert len(reader.entries()) == 2


def test_plan_and_log_share_reserved_slot(tmp_path):
    writer, _ = _pair(tmp_path)
    slot = writer.reserve_failure_slot(4, Role.TESTER)
    plan = writer.write_plan(4, Role.TESTER, "try again", failed=True, slot=slot)
    log = writer.write(_entry(4, Role.TESTER, status="failed"), slot=slot)
    assert plan.as_posix() == ".tdd/plan/step-004-tester-failed-01.md"
    assert log.stem == plan.stem


def test_write_plan_body(tmp_path):
    writer, _ = _pair(tmp_path)
    rel = writer.write_plan(3, Role.REFACTORER, "\n- rename helpers\n")
    assert rel.as_posix() == ".tdd/plan/step-003-refactorer.md"
    assert (tmp_path / rel).read_text() == "# Step 3: refactorer\n\n- rename helpers\n"


def test_queries(tmp_path):
    writer, reader = _pair(tmp_path)
    writer.write(_entry(1, Role.TESTER))
    writer.write(_entry(2, Role.IMPLEMENTOR, status="failed"))
    writer.write(_entry(2, Role.IMPLEMENTOR))
    writer.write(_entry(3, Role.REFACTORER, status="failed"))

    assert [e.step_index for e in reader.entries()] == [1, 2, 2, 3]
    assert reader.latest().status == "failed"
    assert reader.latest_committed().step_index == 2
    assert reader.by_step(2).committed
    assert reader.by_step(3).status == "failed"
    assert reader.by_step(9) is None
    assert len(reader.for_role(Role.IMPLEMENTOR)) == 2


def test_unreadable_log_raises(tmp_path):
    _, reader = _pair(tmp_path)
    (tmp_path / LOG_DIR).mkdir(parents=True)
    (tmp_path / LOG_DIR / "step-001-tester.json").write_text("{not json")
    with pytest.raises(LogError):
        reader.entries()


def test_progress_fresh_start(tmp_path):
    progress = _pair(tmp_path)[1].progress()
    assert (progress.next_step, progress.next_role, progress.source) == (1, Role.TESTER, "fresh")


def test_progress_resumes_after_last_committed_step(tmp_path):
    writer, reader = _pair(tmp_path)
    writer.write(_entry(1, Role.TESTER))
    writer.write(_entry(2, Role.IMPLEMENTOR))
    writer.write(_entry(3, Role.REFACTORER, status="failed"))

    progress = reader.progress()

    assert progress.completed_steps == 2
    assert progress.next_step == 3
    assert progress.next_role is Role.REFACTORER
    assert progress.source == "log"


def test_progress_falls_back_to_plan_documents(tmp_path):
    writer, reader = _pair(tmp_path)
    writer.write_plan(1, Role.TESTER, "a")
    writer.write_plan(2, Role.IMPLEMENTOR, "b")
    writer.write_plan(3, Role.REFACTORER, "c", failed=True)

    progress = reader.progress()

    assert progress.next_step == 3
    assert progress.next_role is Role.REFACTORER
    assert progress.source == "plan"


def test_progress_prefers_plans_ahead_of_the_log(tmp_path):
    writer, reader = _pair(tmp_path)
    for step, role in ((1, Role.TESTER), (2, Role.IMPLEMENTOR)):
        writer.write_plan(step, role, "plan")
        writer.write(_entry(step, role))
    (tmp_path / LOG_DIR / "step-002-implementor.json").unlink()

    progress = reader.progress()

    assert (progress.completed_steps, progress.next_role) == (2, Role.REFACTORER)
    assert progress.source == "plan"


def test_progress_tie_reports_the_log(tmp_path):
    writer, reader = _pair(tmp_path)
    writer.write_plan(1, Role.TESTER, "plan")
    writer.write(_entry(1, Role.TESTER))

    progress = reader.progress()

    assert progress.next_step == 2
    assert progress.source == "log"
