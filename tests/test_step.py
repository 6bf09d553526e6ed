import pytest

from tddmachine.step import Role, StepContext, StepContextBuilder, StepResult


def test_role_cycle_is_tester_implementor_refactorer():
    role = Role.first()
    seen = []
    for _ in range(6):
        seen.append(role)
        role = role.next()
    assert seen == [
        Role.TESTER, Role.IMPLEMENTOR, Role.REFACTORER,
        Role.TESTER, Role.IMPLEMENTOR, Role.REFACTORER,
    ]


def test_role_from_str():
    assert Role.from_str(" Implementor ") is Role.IMPLEMENTOR
    with pytest.raises(ValueError):
        Role.from_str("debugger")


def test_step_result_dedupes_and_normalizes_paths():
    result = StepResult(
        files_changed=["src\\calc.py", "src/calc.py", "tests/test_calc.py"],
        summary="feat: add\n\nmore detail",
    )
    assert result.files_changed == ["src/calc.py", "tests/test_calc.py"]
    assert result.summary == "feat: add"


def test_step_context_is_frozen():
    ctx = StepContext(role=Role.TESTER, step_index=1)
    with pytest.raises(Exception):
        ctx.step_index = 2


def test_step_context_rejects_zero_index():
    with pytest.raises(Exception):
        StepContext(role=Role.TESTER, step_index=0)


class _SnapshotVcs:
    def tracked_files(self):
        return ["src\\b.py", "a.py", ".git/HEAD", "kata.md"]

    def last_commit_message(self):
        return "test: add failing test"

    def last_diff(self):
        return "+assert add('') == 0"


def test_context_builder_sorts_and_filters_snapshot(tmp_path):
    (tmp_path / "kata.md").write_text("# Kata\nSum numbers.\n")
    builder = StepContextBuilder(tmp_path, "kata.md", _SnapshotVcs())

    ctx = builder.build(Role.IMPLEMENTOR, 2)

    assert ctx.role is Role.IMPLEMENTOR
    assert ctx.step_index == 2
    assert ctx.kata_description.startswith("# Kata")
    assert ctx.last_commit_message == "test: add failing test"
    assert ctx.last_diff.startswith("+assert")
    assert ctx.repo_snapshot_paths == ["a.py", "kata.md", "src/b.py"]


def test_context_builder_tolerates_missing_kata(tmp_path):
    ctx = StepContextBuilder(tmp_path, "kata.md", _SnapshotVcs()).build(Role.TESTER, 1)
    assert ctx.kata_description == ""
