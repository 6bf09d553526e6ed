"""
Step primitives: the role cycle, the per-step context handed to agents,
and the immutable result an agent's edits produce.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    """The three red-green-refactor roles, in rotation order."""

    TESTER = "tester"
    IMPLEMENTOR = "implementor"
    REFACTORER = "refactorer"

    def next(self) -> "Role":
        order = list(Role)
        return order[(order.index(self) + 1) % len(order)]

    @classmethod
    def first(cls) -> "Role":
        return cls.TESTER

    @classmethod
    def from_str(cls, value: str) -> "Role":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}. Known: {[r.value for r in cls]}") from None

    def __str__(self) -> str:
        return self.value


class StepContext(BaseModel):
    """Everything a role sees before proposing edits. Rebuilt for every step."""

    model_config = ConfigDict(frozen=True)

    role: Role
    step_index: int = Field(ge=1)
    kata_description: str = ""
    last_commit_message: str = ""
    last_diff: str = ""
    repo_snapshot_paths: list[str] = Field(default_factory=list)


class StepResult(BaseModel):
    """Outcome of one applied edit plan."""

    model_config = ConfigDict(frozen=True)

    files_changed: list[str] = Field(default_factory=list)
    summary: str
    notes: str = ""

    @field_validator("files_changed")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for path in v:
            normalized = path.replace("\\", "/")
            if normalized not in seen:
                seen.append(normalized)
        return seen

    @field_validator("summary")
    @classmethod
    def _one_line(cls, v: str) -> str:
        lines = [line.strip() for line in v.strip().splitlines() if line.strip()]
        return lines[0] if lines else ""


# ---------------------------------------------------------------------------
# Context builder
# ---------------------------------------------------------------------------

class StepContextBuilder:
    """
    Assembles a StepContext from the kata file and the repository snapshot.

    `vcs` is anything with last_commit_message(), last_diff() and
    tracked_files() (see tddmachine.workspace.GitWorkspace).
    """

    def __init__(self, root: Path, kata_file: str, vcs):
        self.root = root
        self.kata_file = kata_file
        self.vcs = vcs

    def read_kata(self) -> str:
        path = self.root / self.kata_file
        if not path.exists():
            logger.warning(f"[CONTEXT] Kata file missing: {path}")
            return ""
        return path.read_text(encoding="utf-8")

    def build(self, role: Role, step_index: int) -> StepContext:
        paths = sorted(
            p.replace("\\", "/")
            for p in self.vcs.tracked_files()
            if not (p == ".git" or p.startswith(".git/"))
        )
        ctx = StepContext(
            role=role,
            step_index=step_index,
            kata_description=self.read_kata(),
            last_commit_message=self.vcs.last_commit_message(),
            last_diff=self.vcs.last_diff(),
            repo_snapshot_paths=paths,
        )
        logger.debug(
            f"[CONTEXT] step {step_index} ({role}) — "
            f"{len(paths)} files, {len(ctx.last_diff)} diff chars"
        )
        return ctx
