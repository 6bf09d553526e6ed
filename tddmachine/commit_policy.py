"""
Commit Policy — renders the structured commit message for a step.

Pure: the same inputs always produce byte-identical text. No clock,
no environment, no filesystem.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

from tddmachine.ci_gate import GateReport
from tddmachine.step import Role, StepResult

DEFAULT_KATA_GOAL = "See kata file for details"
NO_NOTES = "- Agent did not provide additional notes."
NO_FILES = "- No files reported"

ROLE_COMMIT_TYPE = {
    Role.TESTER: "test",
    Role.IMPLEMENTOR: "feat",
    Role.REFACTORER: "refactor",
}

_CONVENTIONAL_RE = re.compile(
    r"^(feat|fix|test|tests|refactor|chore|docs|style|perf|build|ci)(\([^)]*\))?!?:\s*\S"
)


class CommitInputs(BaseModel):
    role: Role
    step_index: int
    kata_description: str
    result: StepResult
    plan_path: str
    gate: GateReport


def summary_line(role: Role, step_index: int, summary: str) -> str:
    summary = summary.strip()
    if not summary:
        return f"chore: {role.value} step {step_index}"
    if _CONVENTIONAL_RE.match(summary):
        return summary
    return f"{ROLE_COMMIT_TYPE[role]}: {summary}"


def kata_goal(kata: str) -> str:
    for line in kata.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped
    return DEFAULT_KATA_GOAL


def _bullets(text: str) -> list[str]:
    lines = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        line = line.lstrip("-*•").strip()
        if line:
            lines.append(f"- {line}")
    return lines


def format_commit_message(inputs: CommitInputs) -> str:
    role, step = inputs.role, inputs.step_index

    sections = [summary_line(role, step, inputs.result.summary)]

    sections.append("\n".join([
        "Context:",
        f"- Role: {role.value}",
        f"- Step: {step}",
        f"- Kata goal: {kata_goal(inputs.kata_description)}",
        f"- Plan: {inputs.plan_path}",
    ]))

    notes = _bullets(inputs.result.notes) or [NO_NOTES]
    sections.append("\n".join(["Rationale:", *notes]))

    files = [f"- {path}" for path in inputs.result.files_changed] or [NO_FILES]
    sections.append("\n".join(["Diff summary:", *files]))

    verification = ["Verification:"]
    for cmd in inputs.gate.commands:
        code = "n/a" if cmd.exit_code is None else str(cmd.exit_code)
        verification.append(f"- {cmd.name}: {cmd.status} (exit {code}) `{' '.join(cmd.argv)}`")
    if len(verification) == 1:
        verification.append("- No CI commands recorded")
    sections.append("\n".join(verification))

    return "\n\n".join(sections) + "\n"
