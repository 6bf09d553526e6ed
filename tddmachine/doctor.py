"""
Environment diagnostics for `tddmachine doctor`.

Each check is independent; the command reports all of them and fails if
any is unhealthy.
"""

from __future__ import annotations

import shutil
import socket
from pathlib import Path
from urllib.parse import urlparse

from pydantic import BaseModel

from tddmachine.bootstrap import BootstrapRunner, read_bootstrap_state
from tddmachine.config_loader import TddConfig
from tddmachine.workspace import GitWorkspace, VcsError

CONNECT_TIMEOUT_SECS = 2.0


class DoctorCheck(BaseModel):
    name: str
    ok: bool
    detail: str = ""


def check_git(root: Path, config: TddConfig) -> DoctorCheck:
    ws = config.workspace
    if not (root / ".git").exists():
        return DoctorCheck(name="git", ok=False, detail="not a git repository (run `tddmachine init`)")
    vcs = GitWorkspace(root, protected=[ws.plan_dir, ws.log_dir, ws.state_dir])
    try:
        dirty = vcs.dirty_files()
    except VcsError as e:
        return DoctorCheck(name="git", ok=False, detail=str(e))
    if dirty:
        return DoctorCheck(name="git", ok=False, detail=f"{len(dirty)} uncommitted change(s)")
    return DoctorCheck(name="git", ok=True, detail="working tree clean")


def _resolve_program(program: str, root: Path) -> str | None:
    if "/" in program or "\\" in program:
        candidate = Path(program)
        if not candidate.is_absolute():
            candidate = root / candidate
        return str(candidate) if candidate.exists() else None
    return shutil.which(program)


def check_ci_commands(root: Path, config: TddConfig) -> list[DoctorCheck]:
    checks = []
    for name, argv in config.ci.commands():
        found = _resolve_program(argv[0], root)
        checks.append(DoctorCheck(
            name=f"ci.{name}",
            ok=found is not None,
            detail=found or f"{argv[0]} not found on PATH",
        ))
    return checks


def check_token(config: TddConfig) -> DoctorCheck:
    env = config.llm.api_key_env
    ok = bool(config.llm.api_key())
    return DoctorCheck(name="llm.token", ok=ok, detail=f"{env} {'set' if ok else 'not set'}")


def check_endpoint(config: TddConfig) -> DoctorCheck:
    url = urlparse(config.llm.base_url)
    host = url.hostname
    if not host:
        return DoctorCheck(name="llm.endpoint", ok=False, detail=f"cannot parse {config.llm.base_url}")
    port = url.port or (443 if url.scheme == "https" else 80)
    try:
        with socket.create_connection((host, port), timeout=CONNECT_TIMEOUT_SECS):
            pass
    except OSError as e:
        return DoctorCheck(name="llm.endpoint", ok=False, detail=f"{host}:{port} unreachable ({e})")
    return DoctorCheck(name="llm.endpoint", ok=True, detail=f"{host}:{port} reachable")


def check_bootstrap(root: Path, config: TddConfig) -> DoctorCheck:
    ws = config.workspace
    if ws.bootstrap is None:
        return DoctorCheck(name="bootstrap", ok=True, detail="not configured")

    state = read_bootstrap_state(root / ws.state_dir)
    if state is None:
        return DoctorCheck(name="bootstrap", ok=False, detail="never run (run `tddmachine provision`)")

    t = state.telemetry
    if t.skipped:
        runner = BootstrapRunner(root, root / ws.state_dir, ws.bootstrap)
        if runner.present_marker() is None:
            return DoctorCheck(
                name="bootstrap", ok=False,
                detail="last run was skipped but no skip marker exists any more",
            )
        return DoctorCheck(name="bootstrap", ok=True, detail=t.skip_reason or "skipped")

    if t.status != "succeeded":
        reason = "timed out" if t.timed_out else (t.error or f"exit code {t.exit_code}")
        return DoctorCheck(name="bootstrap", ok=False, detail=f"last run failed: {reason}")
    return DoctorCheck(name="bootstrap", ok=True, detail=f"succeeded at {t.started_at}")


def run_doctor(root: Path, config: TddConfig, check_network: bool = True) -> list[DoctorCheck]:
    checks = [check_git(root, config)]
    checks.extend(check_ci_commands(root, config))
    checks.append(check_token(config))
    if check_network:
        checks.append(check_endpoint(config))
    checks.append(check_bootstrap(root, config))
    return checks
