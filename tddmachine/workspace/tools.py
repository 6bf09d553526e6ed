"""
Blocking command execution for CI gate commands.

Every command runs to completion or to its timeout. A command that
cannot be started raises ToolLaunchError; a non-zero exit or a timeout
comes back as a ToolResult so the gate can record it.
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel

TIMEOUT_EXIT_CODE = 124


class ToolLaunchError(Exception):
    """The command could not be started at all (missing binary, bad cwd...)."""

    def __init__(self, argv: list[str], reason: str):
        self.argv = list(argv)
        self.reason = reason
        super().__init__(f"Failed to launch {' '.join(argv)}: {reason}")


class ToolResult(BaseModel):
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    status: Literal["ok", "failed", "timeout"] = "ok"
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == "ok"

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class ToolExecutor:
    """Runs argv lists inside a fixed working directory."""

    def __init__(self, working_dir: Path, default_timeout: int = 900):
        self.working_dir = working_dir
        self.default_timeout = default_timeout

    def execute(self, argv: list[str], timeout: int | None = None) -> ToolResult:
        if not argv:
            raise ToolLaunchError(argv, "empty command")

        limit = timeout or self.default_timeout
        start = time.monotonic()
        logger.debug(f"[TOOLS] $ {' '.join(argv)} (timeout {limit}s)")

        try:
            proc = subprocess.run(
                argv,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(f"[TOOLS] Timed out after {limit}s: {' '.join(argv)}")
            return ToolResult(
                argv=list(argv),
                returncode=TIMEOUT_EXIT_CODE,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr) + f"\ncommand timed out after {limit}s",
                status="timeout",
                duration_ms=elapsed,
            )
        except OSError as e:
            raise ToolLaunchError(argv, str(e)) from e

        elapsed = int((time.monotonic() - start) * 1000)
        status = "ok" if proc.returncode == 0 else "failed"
        logger.debug(f"[TOOLS] exit {proc.returncode} in {elapsed}ms")

        return ToolResult(
            argv=list(argv),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            status=status,
            duration_ms=elapsed,
        )
