"""
Workspace scaffolding for `tddmachine init`.

Idempotent: existing files are validated and reused, never overwritten.
A brand new repository gets an initial commit so the loop always has a
known-good state to reset to; an existing one gets the scaffolding
files committed on top of its history.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from tddmachine.config_loader import DEFAULT_CONFIG_NAME, TddConfig, default_template, load_config
from tddmachine.controller import INITIAL_COMMIT_MESSAGE
from tddmachine.workspace import GitWorkspace

DEFAULT_KATA = """# Kata Description

Write a clear description of the kata you want to practice here.
The TDD machine uses this as context for generating tests and implementations.

## Example

Implement a string calculator that:
- Takes a string of comma-separated numbers and returns their sum
- Returns 0 for an empty string
- Handles newlines between numbers
- Supports custom delimiters
"""

PROJECT_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg", "src", "package.json", "Cargo.toml", "go.mod")


class InitResult(BaseModel):
    root: str
    workspace_exists: bool = False
    git_initialized: bool = False
    config_created: bool = False
    kata_created: bool = False
    directories_created: list[str] = Field(default_factory=list)
    gitignore_updated: bool = False
    initial_commit: str | None = None


def detect_existing_project(root: Path) -> bool:
    return any((root / marker).exists() for marker in PROJECT_MARKERS)


def _update_gitignore(root: Path, entries: list[str]) -> bool:
    gitignore = root / ".gitignore"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        present = {line.strip() for line in content.splitlines()}
        additions = [e for e in entries if e not in present]
        if not additions:
            return False
        with open(gitignore, "a", encoding="utf-8") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write("\n# TDD Machine\n")
            for e in additions:
                f.write(f"{e}\n")
        return True

    gitignore.write_text("# TDD Machine\n" + "\n".join(entries) + "\n", encoding="utf-8")
    return True


def initialize_workspace(root: Path, config_name: str = DEFAULT_CONFIG_NAME) -> tuple[InitResult, TddConfig]:
    """Create (or validate) everything a workspace needs before `run`."""
    root = root.resolve()
    result = InitResult(root=str(root), workspace_exists=detect_existing_project(root))
    if result.workspace_exists:
        logger.info("[INIT] Existing project detected; project files will not be touched")

    vcs = GitWorkspace(root)
    vcs.open_or_init()
    result.git_initialized = not vcs.has_commits()

    config_path = root / config_name
    if not config_path.exists():
        config_path.write_text(default_template(), encoding="utf-8")
        result.config_created = True
    config = load_config(config_path)
    ws = config.workspace

    kata_path = root / ws.kata_file
    if not kata_path.exists():
        kata_path.parent.mkdir(parents=True, exist_ok=True)
        kata_path.write_text(DEFAULT_KATA, encoding="utf-8")
        result.kata_created = True

    for rel in (ws.plan_dir, ws.log_dir, ws.state_dir):
        path = root / rel
        if not path.exists():
            path.mkdir(parents=True)
            result.directories_created.append(rel)

    # Plans are committed with each step; logs and state stay local.
    ignore = [f"{ws.log_dir.strip('/')}/", f"{ws.state_dir.strip('/')}/"]
    result.gitignore_updated = _update_gitignore(root, ignore)

    author = config.commit_author
    created = result.config_created or result.kata_created or result.gitignore_updated
    if result.git_initialized:
        if created:
            vcs.stage_all()
            result.initial_commit = vcs.commit(INITIAL_COMMIT_MESSAGE, author.name, author.email)
    else:
        # Only the scaffolding files; unrelated work in progress stays unstaged.
        vcs.stage_paths([config_name, ws.kata_file, ".gitignore"])
        if vcs.has_staged_changes():
            result.initial_commit = vcs.commit(INITIAL_COMMIT_MESSAGE, author.name, author.email)
            logger.info("[INIT] Committed workspace scaffolding to the existing history")

    return result, config
