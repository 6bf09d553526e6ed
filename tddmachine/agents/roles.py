"""
Role profiles — prompts and edit-scope rules for each role.

Behaviour differences between Tester, Implementor and Refactorer live
here as data, looked up by Role. The agent class itself is shared.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable

from tddmachine.agents.edit_plan import AgentError, EditPlan
from tddmachine.step import Role

MAX_FILES_PER_STEP = 5

_TEST_DIRS = {"tests", "test", "__tests__", "spec", "specs"}
_TEST_SUFFIXES = (
    "_test.py", "_tests.py", "_test.go", "_test.rs", "_tests.rs",
    ".test.js", ".test.ts", ".test.jsx", ".test.tsx",
    ".spec.js", ".spec.ts", ".spec.jsx", ".spec.tsx",
)
_NON_SOURCE_SUFFIXES = (".md", ".rst", ".txt")


class ScopeViolation(AgentError):
    """The edit plan touches files outside the role's remit."""


def is_test_path(path: str) -> bool:
    p = PurePosixPath(path.replace("\\", "/"))
    if any(part in _TEST_DIRS for part in p.parts[:-1]):
        return True
    name = p.name
    return (
        name.startswith("test_")
        or name == "conftest.py"
        or name.endswith(_TEST_SUFFIXES)
    )


def is_source_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    if is_test_path(normalized):
        return False
    if normalized.startswith(".tdd/") or normalized.endswith(_NON_SOURCE_SUFFIXES):
        return False
    return True


# ---------------------------------------------------------------------------
# Scope rules
# ---------------------------------------------------------------------------

def _tester_scope(plan: EditPlan) -> None:
    for path in plan.paths:
        if not is_test_path(path):
            raise ScopeViolation(f"Tester edits must touch tests only (got {path})")


def _implementor_scope(plan: EditPlan) -> None:
    if not any(is_source_path(p) for p in plan.paths):
        raise ScopeViolation("Implementor must modify at least one source file")
    if len(plan.files) > MAX_FILES_PER_STEP:
        raise ScopeViolation(
            f"Implementor plan is too large; limit edits to at most {MAX_FILES_PER_STEP} files"
        )


def _refactorer_scope(plan: EditPlan) -> None:
    if len(plan.files) > MAX_FILES_PER_STEP:
        raise ScopeViolation(
            f"Refactorer plan touches too many files; limit to {MAX_FILES_PER_STEP}"
        )
    for path in plan.paths:
        if is_test_path(path):
            raise ScopeViolation(f"Refactorer cannot modify test files ({path})")
        if not is_source_path(path):
            raise ScopeViolation(f"Refactorer may only modify source files ({path})")


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RoleProfile:
    role: Role
    plan_prompt: str
    edit_prompt: str
    plan_instruction: str
    check_scope: Callable[[EditPlan], None]


ROLE_PROFILES: dict[Role, RoleProfile] = {
    Role.TESTER: RoleProfile(
        role=Role.TESTER,
        plan_prompt="""You are the Tester in a strict red-green-refactor loop.
Identify the next failing test that reveals missing behaviour from the kata.
Respond with a concise plan (bullets encouraged): which test you will add and why.
Do not describe implementation changes.""",
        edit_prompt="""You are the Tester applying changes.
Only modify test files. Do not change production code.
Return a JSON edit plan that adds or updates tests.
The new test must fail against the current implementation.""",
        plan_instruction="Outline the next failing test.",
        check_scope=_tester_scope,
    ),
    Role.IMPLEMENTOR: RoleProfile(
        role=Role.IMPLEMENTOR,
        plan_prompt="""You are the Implementor in a strict red-green-refactor loop.
Study the failing test from the last commit and outline the minimal production
change that makes it pass. Keep the plan focused on production code.""",
        edit_prompt="""You are applying the minimal code change required to make the tests pass.
Only touch the files that are absolutely necessary, preferring small, surgical diffs.
Do not weaken or delete tests. Return a JSON edit plan.""",
        plan_instruction="Outline the minimal change that turns the failing test green.",
        check_scope=_implementor_scope,
    ),
    Role.REFACTORER: RoleProfile(
        role=Role.REFACTORER,
        plan_prompt="""You are the Refactorer in a strict red-green-refactor loop.
Identify safe improvements that keep behaviour and tests unchanged:
cleanup, deduplication, naming, clarity.""",
        edit_prompt="""Apply refactorings that do not modify any tests or change observable behaviour.
Only touch production code files and keep the edit set small.
Return a JSON edit plan.""",
        plan_instruction="Outline a behaviour-preserving refactoring.",
        check_scope=_refactorer_scope,
    ),
}
