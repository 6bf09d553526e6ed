import json

import pytest

from conftest import FakeRouter
from tddmachine.agents import AgentError, EditPlanError, RoleAgent, ScopeViolation, build_agents
from tddmachine.agents.roles import is_source_path, is_test_path
from tddmachine.router import RouterError
from tddmachine.step import Role, StepContext


def _edit_json(*paths: str, message: str = "test: add case") -> str:
    return json.dumps({
        "commit_message": message,
        "notes": "- one",
        "files": [{"path": p, "contents": "pass\n"} for p in paths],
    })


def _ctx(role: Role, step: int = 1, **kw) -> StepContext:
    return StepContext(role=role, step_index=step, kata_description="# Calc", **kw)


@pytest.mark.parametrize("path", [
    "tests/test_calc.py", "src/calc_test.py", "test_calc.py", "conftest.py",
    "web/__tests__/calc.js", "web/calc.spec.ts", "pkg/spec/calc_spec.rb",
])
def test_is_test_path(path):
    assert is_test_path(path)


@pytest.mark.parametrize("path", ["src/calc.py", "calc.py", "lib/testing_utils.py"])
def test_is_not_test_path(path):
    assert not is_test_path(path)


def test_is_source_path_excludes_docs_and_state():
    assert is_source_path("src/calc.py")
    assert not is_source_path("README.md")
    assert not is_source_path(".tdd/plan/step-001-tester.md")
    assert not is_source_path("tests/test_calc.py")


def test_propose_makes_plan_then_edit_call():
    router = FakeRouter(["- add test for empty string", _edit_json("tests/test_calc.py")])
    agent = RoleAgent(router, Role.TESTER)

    proposal = agent.propose(_ctx(Role.TESTER), attempt=1)

    assert proposal.plan == "- add test for empty string"
    assert proposal.edits.paths == ["tests/test_calc.py"]
    assert proposal.provider == "openai"
    assert proposal.model == "gpt-test"
    assert len(router.calls) == 2
    edit_prompt = router.calls[1][1][-1]["content"]
    assert "- add test for empty string" in edit_prompt
    assert '"commit_message"' in edit_prompt


def test_retry_attempt_is_mentioned_in_plan_prompt():
    router = FakeRouter(["plan", _edit_json("tests/test_calc.py")])
    RoleAgent(router, Role.TESTER).propose(_ctx(Role.TESTER), attempt=2)
    plan_prompt = router.calls[0][1][-1]["content"]
    assert "attempt 2" in plan_prompt


def test_context_includes_last_commit_and_files():
    router = FakeRouter(["plan", _edit_json("src/calc.py", message="feat: add")])
    ctx = _ctx(
        Role.IMPLEMENTOR, 2,
        last_commit_message="test: empty string returns 0",
        repo_snapshot_paths=["kata.md", "tests/test_calc.py"],
    )
    RoleAgent(router, Role.IMPLEMENTOR).propose(ctx, attempt=1)
    prompt = router.calls[0][1][-1]["content"]
    assert "test: empty string returns 0" in prompt
    assert "- tests/test_calc.py" in prompt
    assert "Step: 2" in prompt


def test_tester_may_not_touch_source():
    router = FakeRouter(["plan", _edit_json("tests/test_calc.py", "src/calc.py")])
    with pytest.raises(ScopeViolation, match="tests only"):
        RoleAgent(router, Role.TESTER).propose(_ctx(Role.TESTER), attempt=1)


def test_implementor_needs_a_source_file():
    router = FakeRouter(["plan", _edit_json("tests/test_calc.py")])
    with pytest.raises(ScopeViolation, match="source file"):
        RoleAgent(router, Role.IMPLEMENTOR).propose(_ctx(Role.IMPLEMENTOR), attempt=1)


def test_implementor_file_limit():
    paths = [f"src/m{i}.py" for i in range(6)]
    router = FakeRouter(["plan", _edit_json(*paths)])
    with pytest.raises(ScopeViolation, match="at most 5"):
        RoleAgent(router, Role.IMPLEMENTOR).propose(_ctx(Role.IMPLEMENTOR), attempt=1)


def test_refactorer_may_not_touch_tests():
    router = FakeRouter(["plan", _edit_json("src/calc.py", "tests/test_calc.py")])
    with pytest.raises(ScopeViolation, match="test files"):
        RoleAgent(router, Role.REFACTORER).propose(_ctx(Role.REFACTORER), attempt=1)


def test_router_failure_becomes_agent_error():
    router = FakeRouter([RouterError("connection refused")])
    with pytest.raises(AgentError, match="connection refused"):
        RoleAgent(router, Role.TESTER).propose(_ctx(Role.TESTER), attempt=1)


def test_garbage_edit_response_is_an_agent_error():
    router = FakeRouter(["plan", "sorry, no JSON today"])
    with pytest.raises(EditPlanError):
        RoleAgent(router, Role.TESTER).propose(_ctx(Role.TESTER), attempt=1)


def test_wrong_role_context_is_rejected():
    router = FakeRouter([])
    with pytest.raises(AgentError):
        RoleAgent(router, Role.TESTER).propose(_ctx(Role.IMPLEMENTOR), attempt=1)


def test_build_agents_covers_every_role():
    agents = build_agents(FakeRouter([]))
    assert set(agents) == set(Role)
    assert all(agent.role is role for role, agent in agents.items())
