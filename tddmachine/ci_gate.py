"""
CI gate: fmt → check → test, stopping at the first failure.

The report records every command, including the ones that never ran,
so a failed attempt can be diagnosed from its step log alone.
"""

from __future__ import annotations

from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field

from tddmachine.config_loader import CiConfig
from tddmachine.workspace.tools import ToolExecutor, ToolLaunchError

OUTPUT_LIMIT_BYTES = 2048
LAUNCH_FAILURE_EXIT_CODE = 127


def truncate_output(text: str, limit: int = OUTPUT_LIMIT_BYTES) -> str:
    """Clip `text` to at most `limit` UTF-8 bytes."""
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore")


class CommandLog(BaseModel):
    name: str
    argv: list[str] = Field(default_factory=list)
    status: Literal["pass", "fail", "timeout", "not-run"] = "not-run"
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def ran(self) -> bool:
        return self.status != "not-run"


class GateReport(BaseModel):
    commands: list[CommandLog] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.commands) and all(c.status == "pass" for c in self.commands)

    @property
    def failed_command(self) -> CommandLog | None:
        for cmd in self.commands:
            if cmd.status in ("fail", "timeout"):
                return cmd
        return None

    def get(self, name: str) -> CommandLog | None:
        for cmd in self.commands:
            if cmd.name == name:
                return cmd
        return None

    def describe_failure(self) -> str:
        cmd = self.failed_command
        if cmd is None:
            return ""
        return (
            f"{cmd.name} ({' '.join(cmd.argv)}) {cmd.status} with exit code {cmd.exit_code}\n"
            f"stdout:\n{cmd.stdout}\nstderr:\n{cmd.stderr}"
        )

    def summary(self) -> str:
        return ", ".join(f"{c.name}: {c.status}" for c in self.commands)


def run_gate(ci: CiConfig, executor: ToolExecutor) -> GateReport:
    """Run the configured CI commands in order and report on each."""
    report = GateReport()
    failed = False

    for name, argv in ci.commands():
        if failed:
            report.commands.append(CommandLog(name=name, argv=argv, status="not-run"))
            continue

        try:
            result = executor.execute(argv, timeout=ci.timeout_secs)
        except ToolLaunchError as e:
            logger.warning(f"[GATE] {name} could not start: {e.reason}")
            report.commands.append(CommandLog(
                name=name,
                argv=argv,
                status="fail",
                exit_code=LAUNCH_FAILURE_EXIT_CODE,
                stderr=truncate_output(str(e)),
            ))
            failed = True
            continue

        if result.success:
            status = "pass"
        elif result.timed_out:
            status = "timeout"
        else:
            status = "fail"

        report.commands.append(CommandLog(
            name=name,
            argv=argv,
            status=status,
            exit_code=result.returncode,
            stdout=truncate_output(result.stdout),
            stderr=truncate_output(result.stderr),
        ))
        logger.debug(f"[GATE] {name}: {status} (exit {result.returncode})")
        failed = status != "pass"

    logger.info(f"[GATE] {report.summary()}")
    return report
