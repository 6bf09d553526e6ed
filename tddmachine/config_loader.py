"""
Configuration loader for TDD Machine.

Reads the workspace-level tdd.yaml, validates it once, and hands out an
immutable TddConfig. Every problem (missing file, bad YAML, schema
violation) surfaces as a ConfigError before any step runs.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


DEFAULT_CONFIG_NAME = "tdd.yaml"
DEFAULT_MAX_STEPS = 10
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_TEMPERATURE = 0.2
COPILOT_API_VERSION = "2023-12-01"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class ConfigError(Exception):
    """Raised when tdd.yaml cannot be read or fails validation."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Invalid config {self.path}: {reason}")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


def _require_text(value: str, field: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field} cannot be empty")
    return value


def _require_argv(value: list[str], field: str) -> list[str]:
    if not value:
        raise ValueError(f"{field} must contain at least one entry")
    if not str(value[0]).strip():
        raise ValueError(f"{field} program name cannot be blank")
    return [str(part) for part in value]


class BootstrapConfig(_Frozen):
    command: list[str]
    working_dir: str = "."
    skip_files: list[str] = Field(default_factory=list)
    timeout_secs: int = Field(default=1800, gt=0)

    @field_validator("command")
    @classmethod
    def _command(cls, v: list[str]) -> list[str]:
        return _require_argv(v, "workspace.bootstrap.command")


class WorkspaceConfig(_Frozen):
    kata_file: str
    plan_dir: str
    log_dir: str
    state_dir: str = ".tdd/state"
    max_steps: int = DEFAULT_MAX_STEPS
    max_attempts_per_agent: int = DEFAULT_MAX_ATTEMPTS
    bootstrap: BootstrapConfig | None = None

    @field_validator("max_steps", mode="before")
    @classmethod
    def _max_steps(cls, v: Any) -> Any:
        if v is None or v == 0:
            return DEFAULT_MAX_STEPS
        if isinstance(v, int) and v < 0:
            raise ValueError("max_steps cannot be negative")
        return v

    @field_validator("max_attempts_per_agent", mode="before")
    @classmethod
    def _max_attempts(cls, v: Any) -> Any:
        if v is None or v == 0:
            return DEFAULT_MAX_ATTEMPTS
        if isinstance(v, int) and v < 0:
            raise ValueError("max_attempts_per_agent cannot be negative")
        return v

    @field_validator("kata_file", "plan_dir", "log_dir", "state_dir")
    @classmethod
    def _paths(cls, v: str) -> str:
        return _require_text(v, "workspace path")


class RoleConfig(_Frozen):
    model: str
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    @field_validator("model")
    @classmethod
    def _model(cls, v: str) -> str:
        return _require_text(v, "model")


class RolesConfig(_Frozen):
    tester: RoleConfig
    implementor: RoleConfig
    refactorer: RoleConfig

    def for_role(self, role: str) -> RoleConfig:
        return getattr(self, str(role))


class LlmConfig(_Frozen):
    provider: Literal["openai", "github_copilot"] = "openai"
    base_url: str
    api_key_env: str
    api_version: str | None = None

    @field_validator("base_url", "api_key_env")
    @classmethod
    def _text(cls, v: str) -> str:
        return _require_text(v, "llm setting")

    @property
    def effective_api_version(self) -> str | None:
        """API version sent to the provider (Copilot always needs one)."""
        if self.api_version:
            return self.api_version
        if self.provider == "github_copilot":
            return COPILOT_API_VERSION
        return None

    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) or None


class CiConfig(_Frozen):
    fmt: list[str]
    check: list[str]
    test: list[str]
    timeout_secs: int = Field(default=900, gt=0)

    @field_validator("fmt", "check", "test")
    @classmethod
    def _commands(cls, v: list[str]) -> list[str]:
        return _require_argv(v, "ci command")

    def commands(self) -> list[tuple[str, list[str]]]:
        """Gate commands in execution order."""
        return [("fmt", self.fmt), ("check", self.check), ("test", self.test)]


class CommitAuthorConfig(_Frozen):
    name: str
    email: str

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _require_text(v, "commit_author.name")

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        _require_text(v, "commit_author.email")
        if not _EMAIL_RE.match(v.strip()):
            raise ValueError(f"commit_author.email does not look like an email: {v!r}")
        return v.strip()


class TddConfig(_Frozen):
    workspace: WorkspaceConfig
    roles: RolesConfig
    llm: LlmConfig
    ci: CiConfig
    commit_author: CommitAuthorConfig


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "config.yaml"


def default_template() -> str:
    """Text of the config written by `tddmachine init`."""
    return DEFAULT_TEMPLATE_PATH.read_text(encoding="utf-8")


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_config(text: str, source: Path | str = "<string>") -> TddConfig:
    """Validate YAML text into a TddConfig."""
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(source, f"YAML parse error: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(source, "top-level document must be a mapping")

    try:
        return TddConfig(**raw)
    except ValidationError as e:
        raise ConfigError(source, _format_validation_error(e)) from e


def load_config(path: Path) -> TddConfig:
    """Load and validate the config file at `path`."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(path, f"cannot read file: {e}") from e
    return parse_config(text, path)


def validate_api_key(config: TddConfig) -> dict[str, bool]:
    """Check whether the configured API key env var is populated."""
    return {config.llm.api_key_env: bool(config.llm.api_key())}
