import subprocess
import sys
from pathlib import Path

import pytest
import yaml

from tddmachine.agents import EditPlan, Proposal
from tddmachine.config_loader import TddConfig, parse_config
from tddmachine.router import RouterResponse
from tddmachine.step import Role


def gate_script(flag: str) -> list[str]:
    """A CI command that fails while `flag` exists in the workspace."""
    return [sys.executable, "-c", f"import pathlib, sys; sys.exit(1 if pathlib.Path({flag!r}).exists() else 0)"]


def base_config_dict() -> dict:
    return {
        "workspace": {
            "kata_file": "kata.md",
            "plan_dir": ".tdd/plan",
            "log_dir": ".tdd/logs",
            "state_dir": ".tdd/state",
            "max_steps": 10,
            "max_attempts_per_agent": 2,
        },
        "roles": {
            "tester": {"model": "gpt-test", "temperature": 0.1},
            "implementor": {"model": "gpt-test"},
            "refactorer": {"model": "gpt-test"},
        },
        "llm": {
            "provider": "openai",
            "base_url": "http://127.0.0.1:9/v1",
            "api_key_env": "TDD_TEST_KEY",
        },
        "ci": {
            "fmt": gate_script("FMT_FAIL"),
            "check": gate_script("CHECK_FAIL"),
            "test": gate_script("TEST_FAIL"),
            "timeout_secs": 60,
        },
        "commit_author": {"name": "Test Bot", "email": "bot@example.com"},
    }


def deep_update(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            deep_update(base[key], value)
        else:
            base[key] = value
    return base


def git(root: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=root, capture_output=True, text=True, check=True
    ).stdout


def write_workspace(root: Path, overrides: dict | None = None) -> TddConfig:
    data = deep_update(base_config_dict(), overrides or {})
    text = yaml.safe_dump(data)
    (root / "tdd.yaml").write_text(text)
    (root / "kata.md").write_text("# String calculator\n\nAdd numbers from a string.\n")
    return parse_config(text)


@pytest.fixture
def workspace(tmp_path):
    """An empty directory holding tdd.yaml and kata.md."""
    def make(overrides: dict | None = None) -> TddConfig:
        return write_workspace(tmp_path, overrides)
    return make


def make_proposal(role: Role, files: dict[str, str], message: str = "", notes: str = "") -> Proposal:
    return Proposal(
        plan=f"plan for {role.value}",
        edits=EditPlan(
            commit_message=message or f"{role.value} change",
            notes=notes,
            files=[{"path": p, "contents": c} for p, c in files.items()],
        ),
        provider="scripted",
        model="gpt-test",
    )


class ScriptedAgent:
    """Agent double that replays queued proposals (or raises queued errors)."""

    def __init__(self, role: Role, script: list | None = None):
        self.role = role
        self.script = list(script or [])
        self.calls: list[tuple[int, int]] = []

    def propose(self, context, attempt):
        self.calls.append((context.step_index, attempt))
        if self.script:
            item = self.script.pop(0)
        else:
            item = make_proposal(self.role, {f"src/{self.role.value}_{context.step_index}.py": "x = 1\n"})
        if isinstance(item, Exception):
            raise item
        return item


def scripted_agents(**scripts) -> dict:
    return {role: ScriptedAgent(role, scripts.get(role.value)) for role in Role}


class FakeRouter:
    """Router double: returns queued strings, records every call."""

    provider = "openai"

    def __init__(self, responses: list):
        self.responses = list(responses)
        self.calls: list[tuple[Role, list[dict]]] = []

    def complete(self, role, messages, max_tokens=4096):
        self.calls.append((role, messages))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return RouterResponse(content=item, model="gpt-test", provider=self.provider)
