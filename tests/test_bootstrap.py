import json
import sys
import textwrap

import pytest

from tddmachine.bootstrap import BootstrapError, BootstrapRunner, read_bootstrap_state
from tddmachine.config_loader import BootstrapConfig


def _runner(tmp_path, script: str, **kw) -> BootstrapRunner:
    config = BootstrapConfig(command=[sys.executable, "-c", script], **kw)
    return BootstrapRunner(tmp_path, tmp_path / ".tdd/state", config)


def _runs(tmp_path):
    return sorted((tmp_path / ".tdd/state/bootstrap").glob("run-*.json"))


def test_nothing_configured_writes_nothing(tmp_path):
    runner = BootstrapRunner(tmp_path, tmp_path / ".tdd/state", None)
    assert runner.provision() is None
    assert not (tmp_path / ".tdd").exists()


def test_successful_run_captures_output(tmp_path):
    runner = _runner(tmp_path, "import sys; print('installed'); print('warn', file=sys.stderr)")

    telemetry = runner.provision()

    assert telemetry.status == "succeeded"
    assert telemetry.exit_code == 0
    assert "installed" in telemetry.stdout
    assert "warn" in telemetry.stderr
    assert telemetry.finished_at is not None
    state = read_bootstrap_state(tmp_path / ".tdd/state")
    assert state.telemetry.status == "succeeded"
    assert state.run_file.startswith(".tdd/state/bootstrap/run-0001-")


def test_skip_marker_prevents_run(tmp_path):
    (tmp_path / ".venv-ready").touch()
    runner = _runner(tmp_path, "open('ran.txt', 'w').write('x')", skip_files=[".venv-ready"])

    telemetry = runner.provision()

    assert telemetry.skipped
    assert "skip marker present at" in telemetry.skip_reason
    assert not (tmp_path / "ran.txt").exists()


def test_force_runs_despite_marker(tmp_path):
    (tmp_path / ".venv-ready").touch()
    runner = _runner(tmp_path, "open('ran.txt', 'w').write('x')", skip_files=[".venv-ready"])

    telemetry = runner.provision(force=True)

    assert telemetry.status == "succeeded"
    assert (tmp_path / "ran.txt").exists()


def test_failure_is_persisted_then_raised(tmp_path):
    runner = _runner(tmp_path, "import sys; print('boom', file=sys.stderr); sys.exit(3)")

    with pytest.raises(BootstrapError, match="exit code 3") as info:
        runner.provision()

    assert "boom" in str(info.value)
    state = read_bootstrap_state(tmp_path / ".tdd/state")
    assert state.telemetry.status == "failed"
    assert state.telemetry.exit_code == 3
    run = json.loads(_runs(tmp_path)[0].read_text())
    assert run["status"] == "failed"


def test_timeout_kills_command(tmp_path):
    runner = _runner(tmp_path, "import time; time.sleep(30)", timeout_secs=1)
    with pytest.raises(BootstrapError, match="timed out"):
        runner.provision()
    assert read_bootstrap_state(tmp_path / ".tdd/state").telemetry.timed_out


def test_launch_failure(tmp_path):
    config = BootstrapConfig(command=["no-such-provisioner-xyz"])
    runner = BootstrapRunner(tmp_path, tmp_path / ".tdd/state", config)
    with pytest.raises(BootstrapError, match="failed to launch"):
        runner.provision()


def test_working_dir_is_relative_to_root(tmp_path):
    (tmp_path / "sub").mkdir()
    runner = _runner(tmp_path, "open('here.txt', 'w').write('x')", working_dir="sub")
    runner.provision()
    assert (tmp_path / "sub" / "here.txt").exists()


def test_each_invocation_keeps_its_own_telemetry(tmp_path):
    (tmp_path / "done").touch()
    runner = _runner(tmp_path, "print('hi')", skip_files=["done"])

    runner.provision()
    runner.provision(force=True)

    runs = _runs(tmp_path)
    assert len(runs) == 2
    statuses = [json.loads(p.read_text())["status"] for p in runs]
    assert statuses == ["skipped", "succeeded"]
    assert read_bootstrap_state(tmp_path / ".tdd/state").telemetry.status == "succeeded"


WATCH_OWN_RUN_FILE = textwrap.dedent("""
    import glob, json, time
    print("fetching dependencies", flush=True)
    seen = "no"
    deadline = time.time() + 10
    while seen == "no" and time.time() < deadline:
        for path in glob.glob(".tdd/state/bootstrap/run-*.json"):
            try:
                with open(path) as f:
                    run = json.load(f)
            except ValueError:
                continue
            if run["status"] == "running" and "fetching dependencies" in run["stdout"]:
                seen = "yes"
        time.sleep(0.05)
    print("seen while running: " + seen)
""")


def test_run_file_shows_partial_output_while_command_runs(tmp_path):
    runner = _runner(tmp_path, WATCH_OWN_RUN_FILE)

    telemetry = runner.provision()

    assert "seen while running: yes" in telemetry.stdout
    run = json.loads(_runs(tmp_path)[0].read_text())
    assert run["status"] == "succeeded"
    assert "seen while running: yes" in run["stdout"]
