"""
Edit plans — the JSON document every role returns in its edit phase.

    {
      "commit_message": "test: cover empty input",
      "notes": "- adds a failing test for ''",
      "files": [{"path": "tests/test_calc.py", "contents": "..."}]
    }

Parsing is strict: unsafe or duplicate paths are rejected before
anything touches disk. Applying is the controller's job.
"""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from tddmachine.step import StepResult


class AgentError(Exception):
    """A role could not produce a usable proposal."""


class EditPlanError(AgentError):
    """The edit plan JSON was missing, malformed, or unsafe."""


def normalize_path(raw: str) -> str:
    """Forward-slash, workspace-relative path. Raises ValueError if it escapes the root."""
    path = raw.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    if not path:
        raise ValueError("file path cannot be empty")
    if path.startswith("/") or (len(path) > 1 and path[1] == ":"):
        raise ValueError(f"absolute paths are not allowed: {raw}")
    parts = PurePosixPath(path).parts
    if not parts:
        raise ValueError(f"file path does not name a file: {raw}")
    if ".." in parts:
        raise ValueError(f"parent directory references are not allowed: {raw}")
    if parts and parts[0] == ".git":
        raise ValueError(f"edits inside .git are not allowed: {raw}")
    return str(PurePosixPath(*parts))


class FileEdit(BaseModel):
    path: str
    contents: str

    @field_validator("path")
    @classmethod
    def _path(cls, v: str) -> str:
        return normalize_path(v)


class EditPlan(BaseModel):
    commit_message: str
    notes: str = ""
    files: list[FileEdit] = Field(min_length=1)

    @field_validator("commit_message")
    @classmethod
    def _message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("commit_message cannot be empty")
        return v.strip()

    @field_validator("files")
    @classmethod
    def _unique(cls, v: list[FileEdit]) -> list[FileEdit]:
        seen = set()
        for edit in v:
            if edit.path in seen:
                raise ValueError(f"duplicate file path: {edit.path}")
            seen.add(edit.path)
        return v

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @classmethod
    def parse(cls, content: str) -> "EditPlan":
        """Parse a model response into a validated plan."""
        text = _strip_fences(content.strip())
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            # Tolerate prose around the object.
            start, end = text.find("{"), text.rfind("}")
            if start == -1 or end <= start:
                raise EditPlanError(f"edit plan is not JSON: {text[:200]!r}") from None
            try:
                raw = json.loads(text[start:end + 1])
            except json.JSONDecodeError as e:
                raise EditPlanError(f"edit plan is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise EditPlanError("edit plan must be a JSON object")

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"[AGENT] Rejected edit plan: {text[:500]}")
            raise EditPlanError(f"invalid edit plan: {e}") from e

    def apply(self, root: Path) -> StepResult:
        """Write every file under `root` and describe the result."""
        for edit in self.files:
            target = root / edit.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(edit.contents, encoding="utf-8")
            logger.debug(f"[AGENT] wrote {edit.path} ({len(edit.contents)} chars)")

        return StepResult(
            files_changed=self.paths,
            summary=self.commit_message,
            notes=self.notes,
        )


def _strip_fences(content: str) -> str:
    if not content.startswith("```"):
        return content
    lines = content.split("\n")
    lines = [l for l in lines if not l.strip().startswith("```")]
    return "\n".join(lines).strip()
