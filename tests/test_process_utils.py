"""Tests for process lifecycle adapters, using real child processes."""

import sys
import threading
from pathlib import Path

import pytest

from testbed.automation.errors import ProcessLaunchError, ResourceLimitError
from testbed.automation.process_utils import (
    CollectorRunner,
    ProcessRunner,
    ProcessState,
    PrometheusRunner,
    StartParams,
)
from testbed.automation.resources import ResourceSpec
from testbed.automation.waiting import Endpoint

SLEEPER = ["-c", "import time; time.sleep(30)"]


def _params(tmp_path: Path, name: str = "Agent", spec: ResourceSpec = None, args=None) -> StartParams:
    return StartParams(
        name=name,
        log_file_path=tmp_path / f"{name.lower()}.log",
        cmd_args=list(args or []),
        resource_spec=spec or ResourceSpec(resource_check_period=0.05),
    )


@pytest.fixture
def runners():
    created = []

    def _make(cls=ProcessRunner, **kwargs):
        runner = cls(sys.executable, **kwargs)
        created.append(runner)
        return runner

    yield _make
    for runner in created:
        runner.stop()


class TestProcessRunner:
    def test_start_and_stop(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        assert runner.state is ProcessState.NOT_STARTED
        runner.start(_params(tmp_path))
        assert runner.state is ProcessState.RUNNING
        assert runner.pid is not None
        code = runner.stop()
        assert runner.state is ProcessState.STOPPED
        assert code is not None and code != 0
        header = (tmp_path / "agent.log").read_text(encoding="utf-8")
        assert header.startswith("[launcher] starting Agent:")

    def test_stop_is_idempotent(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        runner.start(_params(tmp_path))
        first = runner.stop()
        assert runner.stop() == first

    def test_stop_before_start(self, runners):
        runner = runners(base_args=SLEEPER)
        assert runner.stop() is None
        assert runner.state is ProcessState.NOT_STARTED

    def test_output_goes_to_log(self, tmp_path, runners):
        runner = runners(base_args=["-c", "print('hello from child', flush=True)"])
        runner.start(_params(tmp_path))
        runner._proc.wait(timeout=10)
        runner.stop()
        assert "hello from child" in (tmp_path / "agent.log").read_text(encoding="utf-8")

    def test_spawn_failure(self, tmp_path):
        runner = ProcessRunner(str(tmp_path / "missing-binary"))
        with pytest.raises(ProcessLaunchError, match="cannot start Agent"):
            runner.start(_params(tmp_path))
        assert runner.state is ProcessState.FAILED

    def test_double_start_rejected(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        runner.start(_params(tmp_path))
        with pytest.raises(ProcessLaunchError, match="already started"):
            runner.start(_params(tmp_path))

    def test_env_is_passed(self, tmp_path, runners):
        runner = runners(
            base_args=["-c", "import os; print(os.environ['TESTBED_RESULT_DIR'], flush=True)"],
            env={"TESTBED_RESULT_DIR": "/tmp/results/x"},
        )
        runner.start(_params(tmp_path))
        runner._proc.wait(timeout=10)
        runner.stop()
        assert "/tmp/results/x" in (tmp_path / "agent.log").read_text(encoding="utf-8")


class TestWatchResourceConsumption:
    def test_returns_when_stopped(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        runner.start(_params(tmp_path))
        errors = []

        def watch():
            try:
                runner.watch_resource_consumption()
            except Exception as exc:
                errors.append(exc)

        watcher = threading.Thread(target=watch)
        watcher.start()
        threading.Event().wait(0.2)
        runner.stop()
        watcher.join(timeout=5)
        assert not watcher.is_alive()
        assert errors == []

    def test_samples_are_reported(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        runner.start(_params(tmp_path, spec=ResourceSpec(resource_check_period=0.05)))
        watcher = threading.Thread(target=runner.watch_resource_consumption)
        watcher.start()
        threading.Event().wait(0.3)
        line = runner.get_resource_consumption()
        runner.stop()
        watcher.join(timeout=5)
        assert line.startswith("Agent RAM (RES):")
        assert runner.get_total_consumption().samples >= 1

    def test_unexpected_exit_is_a_failure(self, tmp_path, runners):
        runner = runners(base_args=["-c", "import sys; sys.exit(3)"])
        runner.start(_params(tmp_path))
        with pytest.raises(ProcessLaunchError, match="exited unexpectedly with code 3"):
            runner.watch_resource_consumption()
        assert runner.state is ProcessState.FAILED

    def test_ram_limit_violation(self, tmp_path, runners):
        runner = runners(base_args=SLEEPER)
        spec = ResourceSpec(expected_max_ram=1, resource_check_period=0.05)
        runner.start(_params(tmp_path, spec=spec))
        with pytest.raises(ResourceLimitError, match="RAM consumption"):
            runner.watch_resource_consumption()
        assert runner.state is ProcessState.FAILED


class TestRunnerVariants:
    def test_collector_passes_prepared_config(self, tmp_path):
        runner = CollectorRunner("/opt/otelcol")
        cleanup = runner.prepare_config("receivers: {}\n")
        try:
            argv = runner.build_argv(_params(tmp_path, args=["--feature-gates=x"]))
            assert argv[:2] == ["/opt/otelcol", "--config"]
            assert Path(argv[2]).read_text(encoding="utf-8") == "receivers: {}\n"
            assert argv[3] == "--feature-gates=x"
        finally:
            cleanup()
        assert not runner.config_path.exists()

    def test_collector_without_config(self, tmp_path):
        runner = CollectorRunner(sys.executable, base_args=["relay.py"])
        assert runner.build_argv(_params(tmp_path, args=["--listen-port", "1"])) == [
            sys.executable,
            "relay.py",
            "--listen-port",
            "1",
        ]
        assert runner.endpoint is None

    def test_prometheus_args_and_endpoint(self, tmp_path):
        runner = PrometheusRunner("/opt/prometheus", listen_port=9090, storage_path=tmp_path / "data")
        cleanup = runner.prepare_config("scrape_configs: []\n")
        try:
            argv = runner.build_argv(_params(tmp_path, name="Scraper", args=["--web.listen-address=:9090"]))
        finally:
            cleanup()
        assert argv[0] == "/opt/prometheus"
        assert argv[1].startswith("--config.file=")
        assert argv[2] == f"--storage.tsdb.path={tmp_path / 'data'}"
        assert argv[3] == "--web.listen-address=:9090"
        assert runner.endpoint == Endpoint("127.0.0.1", 9090)

    def test_not_started_consumption_line(self):
        assert PrometheusRunner("/opt/prometheus").get_resource_consumption() == "process not started"
