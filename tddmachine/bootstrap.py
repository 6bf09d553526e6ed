"""
Bootstrap Runner — one-shot workspace provisioning.

Runs the optional `workspace.bootstrap.command` before the first step
(or on demand via `tddmachine provision`). Skip markers are plain files:
if any exists the command is not run unless forced, so a provisioning
script can drop its own marker on success.

Every invocation leaves a telemetry file under
`<state_dir>/bootstrap/` and overwrites `<state_dir>/bootstrap.json`
with the latest summary. Output is streamed into the telemetry file
while the command runs, so a hung script is visible on disk.
"""

from __future__ import annotations

import json
import os
import selectors
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ValidationError

from tddmachine.config_loader import BootstrapConfig

STATE_FILE = "bootstrap.json"
RUNS_DIR = "bootstrap"
FLUSH_INTERVAL_SECS = 0.5


class BootstrapError(Exception):
    """Provisioning failed. The telemetry has already been persisted."""

    def __init__(self, telemetry: "BootstrapTelemetry"):
        self.telemetry = telemetry
        if telemetry.timed_out:
            detail = f"timed out after {telemetry.duration_ms}ms"
        elif telemetry.error:
            detail = telemetry.error
        else:
            detail = f"exit code {telemetry.exit_code}"
        super().__init__(
            f"Bootstrap command {' '.join(telemetry.command)} failed: {detail}\n"
            f"stdout:\n{telemetry.stdout}\nstderr:\n{telemetry.stderr}"
        )


class BootstrapTelemetry(BaseModel):
    command: list[str]
    working_dir: str
    started_at: str
    finished_at: str | None = None
    duration_ms: int = 0
    status: Literal["running", "succeeded", "failed", "skipped"] = "running"
    exit_code: int | None = None
    skip_reason: str | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @property
    def succeeded(self) -> bool:
        return self.status in ("succeeded", "skipped")


class BootstrapState(BaseModel):
    """Latest provisioning outcome, for fast status lookups."""
    run_file: str
    telemetry: BootstrapTelemetry


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_bootstrap_state(state_dir: Path) -> BootstrapState | None:
    path = state_dir / STATE_FILE
    if not path.exists():
        return None
    try:
        return BootstrapState.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"[BOOTSTRAP] Unreadable state file {path}: {e}")
        return None


class BootstrapRunner:
    def __init__(self, root: Path, state_dir: Path, config: BootstrapConfig | None):
        self.root = root
        self.state_dir = state_dir
        self.config = config

    # -- markers ------------------------------------------------------------

    def marker_paths(self) -> list[Path]:
        if not self.config:
            return []
        paths = []
        for marker in self.config.skip_files:
            p = Path(marker)
            paths.append(p if p.is_absolute() else self.root / p)
        return paths

    def present_marker(self) -> Path | None:
        for path in self.marker_paths():
            if path.exists():
                return path
        return None

    # -- persistence --------------------------------------------------------

    def _runs_dir(self) -> Path:
        return self.state_dir / RUNS_DIR

    def _new_run_file(self) -> Path:
        runs = self._runs_dir()
        runs.mkdir(parents=True, exist_ok=True)
        seq = len(list(runs.glob("run-*.json"))) + 1
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = runs / f"run-{seq:04d}-{stamp}.json"
        while path.exists():
            seq += 1
            path = runs / f"run-{seq:04d}-{stamp}.json"
        return path

    def _write_run(self, run_file: Path, telemetry: BootstrapTelemetry) -> None:
        run_file.write_text(telemetry.model_dump_json(indent=2) + "\n", encoding="utf-8")

    def _finish(self, run_file: Path, telemetry: BootstrapTelemetry) -> BootstrapTelemetry:
        self._write_run(run_file, telemetry)
        state = BootstrapState(
            run_file=str(run_file.relative_to(self.root)) if run_file.is_relative_to(self.root) else str(run_file),
            telemetry=telemetry,
        )
        self.state_dir.mkdir(parents=True, exist_ok=True)
        (self.state_dir / STATE_FILE).write_text(state.model_dump_json(indent=2) + "\n", encoding="utf-8")
        logger.info(f"[BOOTSTRAP] {telemetry.status} — telemetry at {run_file.name}")
        return telemetry

    # -- entry point --------------------------------------------------------

    def provision(self, force: bool = False) -> BootstrapTelemetry | None:
        """
        Run provisioning.

        Returns None when nothing is configured (no telemetry written),
        otherwise the persisted telemetry. Raises BootstrapError on a
        non-zero exit, a timeout, or a launch failure.
        """
        if self.config is None:
            logger.debug("[BOOTSTRAP] No bootstrap configured")
            return None

        cfg = self.config
        working_dir = (self.root / cfg.working_dir).resolve()
        run_file = self._new_run_file()
        telemetry = BootstrapTelemetry(
            command=list(cfg.command),
            working_dir=str(working_dir),
            started_at=_now(),
        )

        marker = self.present_marker()
        if marker is not None and not force:
            telemetry.status = "skipped"
            telemetry.skip_reason = f"skip marker present at {marker}"
            telemetry.finished_at = telemetry.started_at
            logger.info(f"[BOOTSTRAP] Skipped: {telemetry.skip_reason}")
            return self._finish(run_file, telemetry)

        if marker is not None:
            logger.info(f"[BOOTSTRAP] Forced run despite marker {marker}")

        logger.info(f"[BOOTSTRAP] $ {' '.join(cfg.command)} (in {working_dir})")
        self._stream(cfg.command, working_dir, cfg.timeout_secs, run_file, telemetry)
        self._finish(run_file, telemetry)

        if telemetry.status != "succeeded":
            raise BootstrapError(telemetry)
        return telemetry

    def _stream(
        self,
        argv: list[str],
        cwd: Path,
        timeout: int,
        run_file: Path,
        telemetry: BootstrapTelemetry,
    ) -> None:
        start = time.monotonic()
        try:
            p = subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            telemetry.status = "failed"
            telemetry.error = f"failed to launch: {e}"
            telemetry.finished_at = _now()
            return

        sel = selectors.DefaultSelector()
        sel.register(p.stdout, selectors.EVENT_READ, "stdout")
        sel.register(p.stderr, selectors.EVENT_READ, "stderr")

        buffers = {"stdout": bytearray(), "stderr": bytearray()}
        pending = {"stdout": b"", "stderr": b""}
        last_flush = 0.0

        while sel.get_map():
            if time.monotonic() - start > timeout:
                p.kill()
                telemetry.timed_out = True
                logger.warning(f"[BOOTSTRAP] Timed out after {timeout}s, killed")
                break

            for key, _ in sel.select(timeout=0.1):
                chunk = os.read(key.fileobj.fileno(), 4096)
                if not chunk:
                    sel.unregister(key.fileobj)
                    continue
                name = key.data
                buffers[name].extend(chunk)
                lines = (pending[name] + chunk).split(b"\n")
                pending[name] = lines.pop()
                for line in lines:
                    logger.debug(f"[BOOTSTRAP] {name}: {line.decode('utf-8', errors='replace')}")

            now = time.monotonic()
            if now - last_flush >= FLUSH_INTERVAL_SECS:
                telemetry.stdout = buffers["stdout"].decode("utf-8", errors="replace")
                telemetry.stderr = buffers["stderr"].decode("utf-8", errors="replace")
                telemetry.duration_ms = int((now - start) * 1000)
                self._write_run(run_file, telemetry)
                last_flush = now

        sel.close()
        code = p.wait()
        p.stdout.close()
        p.stderr.close()

        telemetry.stdout = buffers["stdout"].decode("utf-8", errors="replace")
        telemetry.stderr = buffers["stderr"].decode("utf-8", errors="replace")
        telemetry.duration_ms = int((time.monotonic() - start) * 1000)
        telemetry.finished_at = _now()
        if telemetry.timed_out:
            telemetry.status = "failed"
            telemetry.exit_code = None
        else:
            telemetry.exit_code = code
            telemetry.status = "succeeded" if code == 0 else "failed"
