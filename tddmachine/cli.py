"""
TDD Machine CLI — The Interface

  tddmachine init                 (scaffold tdd.yaml, kata.md, .tdd/ and git)
  tddmachine run --steps N        (run N red-green-refactor steps)
  tddmachine step                 (run exactly one step)
  tddmachine status               (next role, last step, CI codes)
  tddmachine doctor               (check git, CI tools, LLM access, bootstrap)
  tddmachine provision [--force]  (run the bootstrap command)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from tddmachine.bootstrap import BootstrapError, BootstrapRunner
from tddmachine.config_loader import DEFAULT_CONFIG_NAME, ConfigError, TddConfig, load_config
from tddmachine.controller import Controller, OrchestratorError, commit_provisioning
from tddmachine.doctor import run_doctor
from tddmachine.identity import BANNER, __codename__, __tagline__, __version__
from tddmachine.scaffold import initialize_workspace
from tddmachine.status import format_lines, gather_status
from tddmachine.workspace import GitWorkspace, VcsError

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".tddmachine" / ".env")

app = typer.Typer(
    name="tddmachine",
    help=f"{__codename__} — {__tagline__}\nAutonomous red-green-refactor loop.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

ConfigOption = typer.Option(
    Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to the workspace config file",
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    config: Path = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Initialize a TDD workspace (config, kata, .tdd dirs, git)."""
    _print_banner()
    _configure_logging(verbose)

    config_path = config.resolve()
    root = config_path.parent
    root.mkdir(parents=True, exist_ok=True)

    try:
        result, cfg = initialize_workspace(root, config_path.name)
    except (ConfigError, VcsError) as e:
        console.print(f"[red]🚫 {escape(str(e))}[/]")
        raise typer.Exit(1)

    if result.workspace_exists:
        console.print("📦 Detected existing project — project files left untouched")
    if result.git_initialized:
        console.print("🔧 Initialized new git repository")
    else:
        console.print("✓ Using existing git repository")
    console.print(f"✓ {'Created' if result.config_created else 'Using existing'} {config_path.name}")
    console.print(f"✓ {'Created' if result.kata_created else 'Using existing'} {cfg.workspace.kata_file}")
    for rel in result.directories_created:
        console.print(f"✓ Created directory {rel}")
    if result.initial_commit:
        console.print(f"✓ Created initial commit {result.initial_commit[:10]}")

    if cfg.workspace.bootstrap is not None:
        console.print("\n[bold dim]🔧 [BOOTSTRAP] Provisioning workspace...[/]")
        runner = BootstrapRunner(root, root / cfg.workspace.state_dir, cfg.workspace.bootstrap)
        try:
            telemetry = runner.provision(force=False)
        except BootstrapError as e:
            console.print(f"[red]❌ {escape(str(e))}[/]")
            console.print("[dim]Workspace files were created; fix the command and run `tddmachine provision`.[/]")
            raise typer.Exit(1)
        if telemetry is not None and telemetry.skipped:
            console.print(f"[dim]Skipped: {telemetry.skip_reason}[/]")
        else:
            console.print("[green]✓ Provisioning succeeded[/]")
        _commit_bootstrap_output(root, cfg)

    console.print(f"\n[green]✅ Workspace ready in {root}[/]")
    console.print("  Edit the kata file, then run: [bold]tddmachine run --steps 3[/]")


@app.command()
def run(
    steps: int = typer.Option(1, "--steps", "-n", min=0, help="Number of steps to execute"),
    config: Path = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Run N red-green-refactor steps."""
    _print_banner()
    _configure_logging(verbose)
    _run_steps(config, steps)


@app.command()
def step(
    config: Path = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Run exactly one step."""
    _configure_logging(verbose)
    _run_steps(config, 1)


@app.command()
def status(
    config: Path = ConfigOption,
):
    """Show the next role, the last step and its CI results."""
    config_path, cfg = _load(config)
    report = gather_status(config_path.parent, cfg)
    for line in format_lines(report):
        console.print(line, highlight=False, markup=False)


@app.command()
def doctor(
    config: Path = ConfigOption,
    offline: bool = typer.Option(False, "--offline", help="Skip the network reachability check"),
):
    """Check git, CI tools, LLM credentials and bootstrap health."""
    _print_banner()
    config_path, cfg = _load(config)
    checks = run_doctor(config_path.parent, cfg, check_network=not offline)

    table = Table(title="Doctor", border_style="cyan")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    for check in checks:
        mark = "[green]✓ ok[/]" if check.ok else "[red]✗ fail[/]"
        table.add_row(check.name, mark, check.detail)
    console.print(table)

    if not all(c.ok for c in checks):
        raise typer.Exit(1)


@app.command()
def provision(
    force: bool = typer.Option(False, "--force", "-f", help="Run even if a skip marker exists"),
    config: Path = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Run the configured bootstrap command."""
    _configure_logging(verbose)
    config_path, cfg = _load(config)
    root = config_path.parent
    runner = BootstrapRunner(root, root / cfg.workspace.state_dir, cfg.workspace.bootstrap)

    try:
        telemetry = runner.provision(force=force)
    except BootstrapError as e:
        console.print(f"[red]❌ {escape(str(e))}[/]")
        raise typer.Exit(1)

    if telemetry is None:
        console.print("[dim]No bootstrap configured.[/]")
    elif telemetry.skipped:
        console.print(f"[yellow]Skipped: {telemetry.skip_reason}[/]")
    else:
        console.print(f"[green]✓ Provisioning succeeded in {telemetry.duration_ms}ms[/]")
        _commit_bootstrap_output(root, cfg)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(config: Path) -> tuple[Path, TddConfig]:
    config_path = config.resolve()
    try:
        return config_path, load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]🚫 {escape(str(e))}[/]")
        raise typer.Exit(1)


def _commit_bootstrap_output(root: Path, cfg: TddConfig) -> None:
    ws = cfg.workspace
    vcs = GitWorkspace(root, protected=[ws.plan_dir, ws.log_dir, ws.state_dir])
    if not vcs.has_commits():
        return
    try:
        sha = commit_provisioning(vcs, cfg)
    except OrchestratorError as e:
        console.print(f"[red]🚫 {escape(str(e))}[/]")
        raise typer.Exit(1)
    if sha:
        console.print(f"✓ Committed bootstrap output {sha[:10]}")


def _run_steps(config: Path, steps: int) -> None:
    config_path, cfg = _load(config)
    controller = Controller(config_path.parent, cfg, config_name=config_path.name)

    try:
        summary = controller.run_steps(steps)
    except OrchestratorError as e:
        console.print(Panel(escape(str(e)), title=f"[red]{type(e).__name__}[/]", border_style="red"))
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚡ Interrupted by human.[/]")
        raise typer.Exit(130)

    if summary.executed == 0:
        console.print("[dim]No steps executed.[/]")
        return

    table = Table(title=f"Executed {summary.executed}/{summary.requested} step(s)", border_style="green")
    table.add_column("Step")
    table.add_column("Role")
    table.add_column("Commit")
    table.add_column("Attempts")
    table.add_column("Files", style="dim")
    for entry in summary.steps:
        table.add_row(
            str(entry.step_index),
            entry.role.value,
            (entry.commit_id or "")[:10],
            str(entry.attempts),
            ", ".join(entry.files_changed),
        )
    console.print(table)
    if summary.usage:
        console.print(f"[dim]LLM calls: {summary.usage.get('call_count', 0)}, "
                      f"tokens: {summary.usage.get('total_tokens', 0):,}[/]")


def _log_sink(msg) -> None:
    console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            _log_sink,
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            _log_sink,
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
