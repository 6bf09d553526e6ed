"""
Step log — durable, write-once records of every step outcome.

Layout under the configured directories:

    <plan_dir>/step-003-refactorer.md              plan for a committed step
    <plan_dir>/step-004-tester-failed-01.md        plan for a failed step
    <log_dir>/step-003-refactorer.json             StepLogEntry (committed)
    <log_dir>/step-004-tester-failed-01.json       StepLogEntry (failed)

Files are created exclusively and never rewritten. The reader is the
only source the controller uses to work out where a resumed run picks up.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from tddmachine.ci_gate import GateReport
from tddmachine.step import Role

_LOG_RE = re.compile(r"^step-(\d{3,})-(tester|implementor|refactorer)(?:-failed-(\d+))?\.json$")
_PLAN_RE = re.compile(r"^step-(\d{3,})-(tester|implementor|refactorer)\.md$")


class LogError(Exception):
    """A step log or plan file could not be written or read."""


class StepLogEntry(BaseModel):
    step_index: int = Field(ge=1)
    role: Role
    status: Literal["committed", "failed"] = "committed"
    attempts: int = 1
    plan_path: str = ""
    files_changed: list[str] = Field(default_factory=list)
    commit_id: str | None = None
    commit_message: str = ""
    notes: str = ""
    runner: GateReport = Field(default_factory=GateReport)
    provider: str = ""
    model: str = ""
    failure: str = ""
    recorded_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def committed(self) -> bool:
        return self.status == "committed"


class Progress(BaseModel):
    """Where the next step starts."""
    completed_steps: int = 0
    next_step: int = 1
    next_role: Role = Role.TESTER
    source: Literal["log", "plan", "fresh"] = "fresh"


def is_step_plan(name: str) -> bool:
    """True for the plan document of a committed step (failed plans excluded)."""
    return _PLAN_RE.match(name) is not None


def _stem(step_index: int, role: Role) -> str:
    return f"step-{step_index:03d}-{role.value}"


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class StepLogger:
    """Writes plan documents and log entries. Never overwrites."""

    def __init__(self, root: Path, plan_dir: str, log_dir: str):
        self.root = root
        self.plan_dir = root / plan_dir
        self.log_dir = root / log_dir

    def _failure_slot(self, step_index: int, role: Role) -> int:
        """Next free failure number for this step/role."""
        prefix = f"{_stem(step_index, role)}-failed-"
        taken = [0]
        for directory in (self.plan_dir, self.log_dir):
            if not directory.exists():
                continue
            for path in directory.glob(f"{prefix}*"):
                digits = path.stem[len(prefix):]
                if digits.isdigit():
                    taken.append(int(digits))
        return max(taken) + 1

    def _name(self, step_index: int, role: Role, failed: bool, slot: int | None) -> str:
        stem = _stem(step_index, role)
        if not failed:
            return stem
        slot = slot if slot is not None else self._failure_slot(step_index, role)
        return f"{stem}-failed-{slot:02d}"

    def _create(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(text)
        except FileExistsError as e:
            raise LogError(f"Refusing to overwrite existing record: {path}") from e
        except OSError as e:
            raise LogError(f"Cannot write {path}: {e}") from e

    def write_plan(
        self,
        step_index: int,
        role: Role,
        text: str,
        failed: bool = False,
        slot: int | None = None,
    ) -> Path:
        """Write the human-readable plan and return its workspace-relative path."""
        path = self.plan_dir / f"{self._name(step_index, role, failed, slot)}.md"
        body = f"# Step {step_index}: {role.value}\n\n{text.strip()}\n"
        self._create(path, body)
        logger.debug(f"[LOG] Plan written: {path}")
        return path.relative_to(self.root)

    def reserve_failure_slot(self, step_index: int, role: Role) -> int:
        return self._failure_slot(step_index, role)

    def write(self, entry: StepLogEntry, slot: int | None = None) -> Path:
        """Persist one entry as pretty JSON. Returns the file path."""
        name = self._name(entry.step_index, entry.role, not entry.committed, slot)
        path = self.log_dir / f"{name}.json"
        self._create(path, entry.model_dump_json(indent=2) + "\n")
        logger.info(f"[LOG] Step {entry.step_index} ({entry.role.value}) → {entry.status}: {path.name}")
        return path


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class StepLogReader:
    """Query side of the step log."""

    def __init__(self, root: Path, plan_dir: str, log_dir: str):
        self.root = root
        self.plan_dir = root / plan_dir
        self.log_dir = root / log_dir

    def _load(self, path: Path) -> StepLogEntry:
        try:
            return StepLogEntry.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise LogError(f"Unreadable step log {path}: {e}") from e

    def entries(self) -> list[StepLogEntry]:
        """All entries, oldest first."""
        if not self.log_dir.exists():
            return []
        keyed = []
        for path in self.log_dir.iterdir():
            match = _LOG_RE.match(path.name)
            if not match:
                continue
            step, _, failed_seq = match.groups()
            committed = failed_seq is None
            key = (int(step), committed, int(failed_seq or 0))
            keyed.append((key, path))
        keyed.sort(key=lambda item: item[0])
        return [self._load(path) for _, path in keyed]

    def latest(self) -> StepLogEntry | None:
        entries = self.entries()
        return entries[-1] if entries else None

    def latest_committed(self) -> StepLogEntry | None:
        committed = [e for e in self.entries() if e.committed]
        return committed[-1] if committed else None

    def by_step(self, step_index: int) -> StepLogEntry | None:
        """The committed entry for a step, else its most recent failure."""
        matches = [e for e in self.entries() if e.step_index == step_index]
        return matches[-1] if matches else None

    def for_role(self, role: Role) -> list[StepLogEntry]:
        return [e for e in self.entries() if e.role == role]

    def _plan_progress(self) -> tuple[int, Role] | None:
        if not self.plan_dir.exists():
            return None
        best: tuple[int, Role] | None = None
        for path in self.plan_dir.iterdir():
            match = _PLAN_RE.match(path.name)
            if not match:
                continue
            step = int(match.group(1))
            if best is None or step > best[0]:
                best = (step, Role(match.group(2)))
        return best

    def progress(self) -> Progress:
        """
        Resolve the next step from durable state.

        Committed log entries and plan documents (committed alongside each
        step) are both consulted and the further one wins, so a missing
        or stale log directory never rewinds the role sequence.
        """
        candidates: list[tuple[int, Role, str]] = []
        last = self.latest_committed()
        if last is not None:
            candidates.append((last.step_index, last.role, "log"))
        from_plans = self._plan_progress()
        if from_plans is not None:
            candidates.append((*from_plans, "plan"))
        if not candidates:
            return Progress()

        # On a tie the log entry is kept.
        step, role, source = max(candidates, key=lambda c: c[0])
        return Progress(
            completed_steps=step,
            next_step=step + 1,
            next_role=role.next(),
            source=source,
        )
