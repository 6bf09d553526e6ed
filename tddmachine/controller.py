"""
TDD Machine Controller — The Loop

It is NOT smart. It is deterministic.

Responsibilities:
  - Work out which step and role come next from the step log
  - Provision the workspace and check the baseline before step 1
  - Build a fresh StepContext per step
  - Run agent → apply edits → CI gate, bounded by max_attempts_per_agent
  - Restore the working tree between failed attempts
  - Commit only after the gate passes
  - Write the plan document and the step log entry
  - Stop the run at the first fatal failure

It never writes code. It only coordinates.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, NoReturn

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel

from tddmachine.agents import Agent, AgentError, Proposal, build_agents
from tddmachine.agents.roles import is_test_path
from tddmachine.audit_logger import AuditLogger
from tddmachine.bootstrap import BootstrapError, BootstrapRunner, BootstrapTelemetry
from tddmachine.ci_gate import GateReport, run_gate
from tddmachine.commit_policy import CommitInputs, format_commit_message
from tddmachine.config_loader import DEFAULT_CONFIG_NAME, TddConfig
from tddmachine.event_bus import EventBus
from tddmachine.router import Router
from tddmachine.step import Role, StepContext, StepContextBuilder, StepResult
from tddmachine.step_log import LogError, Progress, StepLogEntry, StepLogger, StepLogReader, is_step_plan
from tddmachine.workspace import GitWorkspace, VcsError
from tddmachine.workspace.tools import ToolExecutor, ToolLaunchError

console = Console()

INITIAL_COMMIT_MESSAGE = "chore: initialize TDD workspace"
PROVISION_COMMIT_MESSAGE = "chore: provision workspace"
ATTEMPT_MARKER = "attempt.json"
EVENTS_FILE = "events.jsonl"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OrchestratorError(Exception):
    """Base for every condition that stops a run."""


class DirtyWorkspaceError(OrchestratorError):
    def __init__(self, dirty: list[str]):
        self.dirty = dirty
        listing = "\n".join(f"  {line}" for line in dirty[:10])
        super().__init__(f"Workspace has uncommitted changes; commit or discard them first:\n{listing}")


class StepLimitReached(OrchestratorError):
    def __init__(self, completed: int, requested: int, max_steps: int):
        self.completed = completed
        self.requested = requested
        self.max_steps = max_steps
        super().__init__(
            f"Running {requested} more step(s) would exceed max_steps ({max_steps}); "
            f"{completed} already completed"
        )


class BootstrapFailed(OrchestratorError):
    def __init__(self, telemetry: BootstrapTelemetry, detail: str):
        self.telemetry = telemetry
        super().__init__(f"Bootstrap failed; no steps were run.\n{detail}")


class BaselineFailing(OrchestratorError):
    def __init__(self, exit_code: int | None, stdout: str, stderr: str):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            "Baseline test check failed. Existing tests must pass before autonomous "
            "TDD steps can run.\nFix the failing tests manually, then try again.\n\n"
            f"Exit code: {exit_code}\nStdout:\n{stdout}\nStderr:\n{stderr}"
        )


class AttemptsExhausted(OrchestratorError):
    def __init__(self, role: Role, step: int, attempts: int, detail: str):
        self.role = role
        self.step = step
        self.attempts = attempts
        self.detail = detail
        super().__init__(
            f"Step {step} ({role.value}) failed after {attempts} attempt(s):\n{detail}"
        )


class UnrecoverableVcsError(OrchestratorError):
    pass


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class AttemptOutcome(BaseModel):
    """Result of one agent → edit → gate pass. Failures are values, not exceptions."""
    attempt: int
    ok: bool
    kind: Literal["agent", "apply", "ci"] | None = None
    detail: str = ""
    proposal: Proposal | None = None
    result: StepResult | None = None
    gate: GateReport = Field(default_factory=GateReport)


class RunSummary(BaseModel):
    requested: int
    executed: int = 0
    steps: list[StepLogEntry] = Field(default_factory=list)
    usage: dict = Field(default_factory=dict)


def commit_provisioning(vcs: GitWorkspace, config: TddConfig) -> str | None:
    """
    Commit whatever bootstrap left in the tree (skip markers, lock files).

    Step 1 always starts from a clean HEAD, so files written by the
    bootstrap command become part of the baseline instead of blocking
    every later run as uncommitted changes.
    """
    ws = config.workspace
    author = config.commit_author
    try:
        sha = vcs.commit_if_dirty(
            PROVISION_COMMIT_MESSAGE, author.name, author.email,
            exclude=[ws.log_dir, ws.state_dir],
        )
    except VcsError as e:
        raise UnrecoverableVcsError(f"Could not commit bootstrap output: {e}") from e
    if sha:
        logger.info(f"[CONTROLLER] Committed bootstrap output as {sha[:10]}")
    return sha


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    """
    Drives Tester → Implementor → Refactorer steps against one workspace.

    Every collaborator can be injected; defaults talk to git, the real
    process runner and the configured LLM.
    """

    def __init__(
        self,
        root: Path,
        config: TddConfig,
        config_name: str = DEFAULT_CONFIG_NAME,
        router: Router | None = None,
        agents: dict[Role, Agent] | None = None,
        vcs: GitWorkspace | None = None,
        executor: ToolExecutor | None = None,
        bus: EventBus | None = None,
    ):
        self.root = root.resolve()
        self.config = config
        self.config_name = config_name
        ws = config.workspace

        self.router = router
        if agents is None:
            self.router = router or Router(config)
            agents = build_agents(self.router)
        self.agents = agents

        self.vcs = vcs or GitWorkspace(self.root, protected=[ws.plan_dir, ws.log_dir, ws.state_dir])
        self.executor = executor or ToolExecutor(self.root, default_timeout=config.ci.timeout_secs)
        self.step_logger = StepLogger(self.root, ws.plan_dir, ws.log_dir)
        self.reader = StepLogReader(self.root, ws.plan_dir, ws.log_dir)
        self.context_builder = StepContextBuilder(self.root, ws.kata_file, self.vcs)
        self.state_dir = self.root / ws.state_dir
        self.bootstrap = BootstrapRunner(self.root, self.state_dir, ws.bootstrap)

        self.bus = bus or EventBus()
        AuditLogger(self.root / ws.log_dir / EVENTS_FILE, self.bus)

    # -- public -------------------------------------------------------------

    def progress(self) -> Progress:
        return self.reader.progress()

    def run_steps(self, n: int) -> RunSummary:
        """Execute `n` consecutive steps, stopping at the first fatal failure."""
        if n < 0:
            raise ValueError("requested steps cannot be negative")

        summary = RunSummary(requested=n)
        if n == 0:
            logger.info("[CONTROLLER] Zero steps requested, nothing to do")
            return summary

        self._ensure_dirs()
        progress = self.reader.progress()
        max_steps = self.config.workspace.max_steps
        if progress.completed_steps + n > max_steps:
            raise StepLimitReached(progress.completed_steps, n, max_steps)

        self._prepare_repository()
        # Recovery may have dropped an uncommitted plan.
        progress = self.reader.progress()

        if progress.next_step == 1:
            self._provision()
            self._baseline_check()

        self._emit("run_started", {"requested": n}, progress.next_step, progress.next_role)

        step, role = progress.next_step, progress.next_role
        try:
            for _ in range(n):
                entry = self._run_step(step, role)
                summary.steps.append(entry)
                summary.executed += 1
                step, role = step + 1, role.next()
        finally:
            if self.router is not None:
                summary.usage = self.router.usage.summary()
            self._emit("run_finished", {"requested": n, "executed": summary.executed})

        return summary

    # -- setup --------------------------------------------------------------

    def _ensure_dirs(self) -> None:
        ws = self.config.workspace
        for rel in (ws.plan_dir, ws.log_dir, ws.state_dir):
            (self.root / rel).mkdir(parents=True, exist_ok=True)

    def _prepare_repository(self) -> None:
        try:
            self.vcs.open_or_init()
            self._recover_interrupted_attempt()

            if not self.vcs.has_commits():
                self.vcs.stage_all(exclude=self._local_dirs())
                author = self.config.commit_author
                self.vcs.commit(INITIAL_COMMIT_MESSAGE, author.name, author.email)
                logger.info("[CONTROLLER] Created baseline commit")

            dirty = self.vcs.dirty_files()
        except VcsError as e:
            raise UnrecoverableVcsError(str(e)) from e

        if dirty:
            console.print("[red]🚫 Cannot run: workspace has uncommitted changes:[/]")
            for line in dirty[:5]:
                console.print(f"  [dim]{line}[/]")
            raise DirtyWorkspaceError(dirty)

    def _local_dirs(self) -> list[str]:
        ws = self.config.workspace
        return [ws.log_dir, ws.state_dir]

    def _marker_path(self) -> Path:
        return self.state_dir / ATTEMPT_MARKER

    def _write_marker(self, ctx: StepContext, attempt: int) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._marker_path().write_text(json.dumps({
            "step": ctx.step_index,
            "role": ctx.role.value,
            "attempt": attempt,
            "head": self.vcs.head(),
        }, indent=2))

    def _clear_marker(self) -> None:
        self._marker_path().unlink(missing_ok=True)

    def _recover_interrupted_attempt(self) -> None:
        marker = self._marker_path()
        if not marker.exists():
            return
        logger.warning(f"[CONTROLLER] Found interrupted attempt ({marker.read_text().strip()}); restoring working tree")
        console.print("[yellow]⚠ Previous run was interrupted mid-attempt. Restoring working tree to HEAD.[/]")
        self.vcs.restore()
        # A plan written just before the crash never reached a commit.
        for rel in self.vcs.untracked_files(self.config.workspace.plan_dir):
            if is_step_plan(Path(rel).name):
                logger.warning(f"[CONTROLLER] Removing uncommitted plan {rel}")
                (self.root / rel).unlink(missing_ok=True)
        self._clear_marker()

    def _provision(self) -> None:
        if self.config.workspace.bootstrap is None:
            return
        console.print("\n[bold dim]🔧 [BOOTSTRAP] Provisioning workspace...[/]")
        try:
            telemetry = self.bootstrap.provision(force=False)
        except BootstrapError as e:
            self._emit("bootstrap_failed", e.telemetry.model_dump(include={"command", "exit_code", "timed_out"}))
            raise BootstrapFailed(e.telemetry, str(e)) from e
        if telemetry is not None:
            self._emit("bootstrap_finished", {"status": telemetry.status, "skip_reason": telemetry.skip_reason})
        commit_provisioning(self.vcs, self.config)

    def _is_bookkeeping(self, path: str) -> bool:
        ws = self.config.workspace
        for rel in (ws.plan_dir, ws.log_dir, ws.state_dir):
            rel = rel.strip("/")
            if path == rel or path.startswith(rel + "/"):
                return True
        return False

    def _is_scaffolding(self, path: str) -> bool:
        ws = self.config.workspace
        if path in (self.config_name, ws.kata_file, ".gitignore"):
            return True
        return self._is_bookkeeping(path)

    def _baseline_check(self) -> None:
        try:
            files = [f for f in self.vcs.tracked_files() if not self._is_scaffolding(f)]
        except VcsError as e:
            raise UnrecoverableVcsError(str(e)) from e

        if not any(is_test_path(f) for f in files):
            return

        console.print("[bold dim]🔍 Detected existing tests — running baseline check...[/]")
        try:
            result = self.executor.execute(self.config.ci.test, timeout=self.config.ci.timeout_secs)
        except ToolLaunchError as e:
            raise BaselineFailing(None, "", str(e)) from e

        if not result.success:
            self._emit("baseline_failed", {"exit_code": result.returncode})
            raise BaselineFailing(result.returncode, result.stdout, result.stderr)
        console.print("[green]✓ Baseline tests pass[/]")

    # -- step ---------------------------------------------------------------

    def _run_step(self, step: int, role: Role) -> StepLogEntry:
        max_attempts = self.config.workspace.max_attempts_per_agent
        try:
            ctx = self.context_builder.build(role, step)
        except VcsError as e:
            raise UnrecoverableVcsError(str(e)) from e

        console.print(Panel(
            f"Step [bold]{step}[/] — [bold cyan]{role.value}[/]",
            border_style="cyan",
        ))
        self._emit("step_started", {}, step, role)

        outcome: AttemptOutcome | None = None
        try:
            for attempt in range(1, max_attempts + 1):
                console.print(f"[bold]🧪 Attempt {attempt}/{max_attempts}...[/]")
                outcome = self._attempt(ctx, attempt)
                if outcome.ok:
                    return self._commit_step(ctx, outcome)

                console.print(f"[red]❌ Attempt {attempt} failed ({outcome.kind})[/]")
                logger.debug(f"[CONTROLLER] {outcome.detail}")
                self._emit("attempt_failed", {
                    "attempt": attempt, "kind": outcome.kind, "gate": outcome.gate.summary(),
                }, step, role)
                self._discard_attempt()
        except KeyboardInterrupt:
            console.print("\n[yellow]⚡ Interrupted. Restoring working tree.[/]")
            self._discard_attempt()
            raise

        return self._fail_step(ctx, outcome, max_attempts)

    def _attempt(self, ctx: StepContext, attempt: int) -> AttemptOutcome:
        agent = self.agents[ctx.role]
        try:
            proposal = agent.propose(ctx, attempt)
        except AgentError as e:
            return AttemptOutcome(attempt=attempt, ok=False, kind="agent", detail=f"agent error: {e}")

        # restore() keeps these directories, so stray edits there would outlive the attempt.
        reserved = [p for p in proposal.edits.paths if self._is_bookkeeping(p)]
        if reserved:
            return AttemptOutcome(
                attempt=attempt, ok=False, kind="apply", proposal=proposal,
                detail="edits inside workspace bookkeeping directories are not allowed: "
                       + ", ".join(reserved),
            )

        self._write_marker(ctx, attempt)
        try:
            result = proposal.edits.apply(self.root)
        except OSError as e:
            return AttemptOutcome(
                attempt=attempt, ok=False, kind="apply",
                detail=f"could not apply edits: {e}", proposal=proposal,
            )

        gate = run_gate(self.config.ci, self.executor)
        if not gate.passed:
            return AttemptOutcome(
                attempt=attempt, ok=False, kind="ci", detail=gate.describe_failure(),
                proposal=proposal, result=result, gate=gate,
            )

        return AttemptOutcome(attempt=attempt, ok=True, proposal=proposal, result=result, gate=gate)

    def _discard_attempt(self) -> None:
        try:
            self.vcs.restore()
        except VcsError as e:
            raise UnrecoverableVcsError(f"Could not restore working tree: {e}") from e
        self._clear_marker()

    def _commit_step(self, ctx: StepContext, outcome: AttemptOutcome) -> StepLogEntry:
        proposal, result = outcome.proposal, outcome.result
        if proposal is None or result is None:
            self._discard_attempt()
            raise OrchestratorError(
                f"Step {ctx.step_index} ({ctx.role.value}) passed the gate without applied edits"
            )

        plan_rel = self._write_plan(ctx, proposal.plan)
        message = format_commit_message(CommitInputs(
            role=ctx.role,
            step_index=ctx.step_index,
            kata_description=ctx.kata_description,
            result=result,
            plan_path=plan_rel,
            gate=outcome.gate,
        ))

        author = self.config.commit_author
        try:
            self.vcs.stage_all(exclude=self._local_dirs())
            commit_id = self.vcs.commit(message, author.name, author.email)
        except VcsError as e:
            (self.root / plan_rel).unlink(missing_ok=True)
            raise UnrecoverableVcsError(str(e)) from e
        self._clear_marker()

        entry = StepLogEntry(
            step_index=ctx.step_index,
            role=ctx.role,
            status="committed",
            attempts=outcome.attempt,
            plan_path=plan_rel,
            files_changed=result.files_changed,
            commit_id=commit_id,
            commit_message=message,
            notes=result.notes,
            runner=outcome.gate,
            provider=proposal.provider,
            model=proposal.model,
        )
        self._write_entry(entry)

        console.print(f"[green]✅ Step {ctx.step_index} ({ctx.role.value}) committed {commit_id[:10]}[/]")
        self._emit("step_committed", {
            "commit_id": commit_id, "attempts": outcome.attempt,
        }, ctx.step_index, ctx.role)
        return entry

    def _fail_step(self, ctx: StepContext, outcome: AttemptOutcome | None, attempts: int) -> NoReturn:
        detail = outcome.detail if outcome else "no attempts were made"
        proposal = outcome.proposal if outcome else None
        result = outcome.result if outcome else None

        slot = self.step_logger.reserve_failure_slot(ctx.step_index, ctx.role)
        plan_text = proposal.plan if proposal else "No plan was produced."
        plan_text += f"\n\n## Failure\n\n```\n{detail}\n```"
        try:
            plan_path = self.step_logger.write_plan(ctx.step_index, ctx.role, plan_text, failed=True, slot=slot)
            self.step_logger.write(StepLogEntry(
                step_index=ctx.step_index,
                role=ctx.role,
                status="failed",
                attempts=attempts,
                plan_path=plan_path.as_posix(),
                files_changed=result.files_changed if result else [],
                commit_message=proposal.edits.commit_message if proposal else "",
                notes=result.notes if result else "",
                runner=outcome.gate if outcome else GateReport(),
                provider=proposal.provider if proposal else "",
                model=proposal.model if proposal else "",
                failure=detail,
            ), slot=slot)
        except LogError as e:
            logger.error(f"[CONTROLLER] Could not record failed step: {e}")
            detail += f"\n\nThe failed step record could not be written: {e}"

        self._emit("step_failed", {"attempts": attempts}, ctx.step_index, ctx.role)
        console.print(f"[red]❌ Step {ctx.step_index} ({ctx.role.value}) exhausted {attempts} attempt(s).[/]")
        raise AttemptsExhausted(ctx.role, ctx.step_index, attempts, detail)

    def _write_plan(self, ctx: StepContext, plan: str) -> str:
        try:
            path = self.step_logger.write_plan(ctx.step_index, ctx.role, plan)
        except LogError as e:
            self._discard_attempt()
            raise UnrecoverableVcsError(str(e)) from e
        return path.as_posix()

    def _write_entry(self, entry: StepLogEntry) -> None:
        try:
            self.step_logger.write(entry)
        except LogError as e:
            # The commit exists; the plan document still records progress.
            raise UnrecoverableVcsError(f"Step committed but log could not be written: {e}") from e

    def _emit(self, event_type: str, payload: dict, step: int | None = None, role: Role | None = None) -> None:
        self.bus.emit(event_type, "controller", payload, step=step, role=role)
