"""Status report assembled from the step log, git and bootstrap state."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel

from tddmachine.bootstrap import BootstrapState, read_bootstrap_state
from tddmachine.config_loader import TddConfig
from tddmachine.step import Role
from tddmachine.step_log import StepLogEntry, StepLogReader
from tddmachine.workspace import GitWorkspace, VcsError


class StatusReport(BaseModel):
    next_role: Role
    next_step: int
    max_steps: int
    workspace_clean: bool | None = None
    last_commit_id: str | None = None
    last_commit_summary: str | None = None
    last_entry: StepLogEntry | None = None
    bootstrap_configured: bool = False
    bootstrap: BootstrapState | None = None


def gather_status(root: Path, config: TddConfig) -> StatusReport:
    ws = config.workspace
    reader = StepLogReader(root, ws.plan_dir, ws.log_dir)
    progress = reader.progress()

    report = StatusReport(
        next_role=progress.next_role,
        next_step=progress.next_step,
        max_steps=ws.max_steps,
        last_entry=reader.latest(),
        bootstrap_configured=ws.bootstrap is not None,
        bootstrap=read_bootstrap_state(root / ws.state_dir),
    )

    if (root / ".git").exists():
        vcs = GitWorkspace(root, protected=[ws.plan_dir, ws.log_dir, ws.state_dir])
        try:
            report.workspace_clean = vcs.is_clean()
            report.last_commit_id = vcs.head()
            message = vcs.last_commit_message()
            report.last_commit_summary = message.splitlines()[0] if message else None
        except VcsError:
            report.workspace_clean = None

    return report


def _ci_codes(entry: StepLogEntry) -> str:
    parts = []
    for name in ("fmt", "check", "test"):
        cmd = entry.runner.get(name)
        code = "n/a" if cmd is None or cmd.exit_code is None else str(cmd.exit_code)
        parts.append(f"{name}={code}")
    return ", ".join(parts)


def format_lines(report: StatusReport) -> list[str]:
    lines = [f"Next role: {report.next_role.value} (step {report.next_step} of {report.max_steps})"]

    if report.workspace_clean is None:
        lines.append("Workspace clean: unknown")
    else:
        lines.append(f"Workspace clean: {'yes' if report.workspace_clean else 'no'}")

    if report.last_commit_id:
        lines.append(f"Last commit: {report.last_commit_summary or ''} ({report.last_commit_id[:10]})")
    else:
        lines.append("Last commit: none")

    entry = report.last_entry
    if entry is None:
        lines.append("Last step: none recorded")
    else:
        lines.append(
            f"Last step: {entry.role.value} #{entry.step_index} ({entry.status}), plan {entry.plan_path}"
        )
        lines.append(f"CI exit codes: {_ci_codes(entry)}")
        if entry.provider:
            lines.append(f"Provider: {entry.provider} ({entry.model})")

    if not report.bootstrap_configured:
        lines.append("Bootstrap: not configured")
    elif report.bootstrap is None:
        lines.append("Bootstrap: never run")
    else:
        t = report.bootstrap.telemetry
        if t.skipped:
            lines.append(f"Bootstrap: skipped ({t.skip_reason})")
        else:
            code = "n/a" if t.exit_code is None else str(t.exit_code)
            lines.append(f"Bootstrap: {t.status} (exit {code}) at {t.started_at}")

    return lines
