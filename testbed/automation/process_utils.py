#!/usr/bin/env python3
"""Lifecycle adapters for the long-running processes a scenario drives."""

from __future__ import annotations

import os
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import psutil

from testbed.automation.errors import ProcessLaunchError, ProcessStopError, ResourceLimitError
from testbed.automation.resources import (
    DEFAULT_CHECK_PERIOD_S,
    MIB,
    ProcessSampler,
    ResourceConsumption,
    ResourceSpec,
)
from testbed.automation.waiting import Endpoint


class ProcessState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class StartParams:
    name: str
    log_file_path: Path
    cmd_args: List[str] = field(default_factory=list)
    resource_spec: Optional[ResourceSpec] = None


class ProcessRunner:
    """Spawn one external process, watch its resource use and stop it.

    Subclasses decide how the prepared config file is passed on the command
    line and whether the process exposes an endpoint to probe for readiness.
    """

    config_suffix = ".yaml"

    def __init__(
        self,
        exe_path: str,
        base_args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        stop_timeout: float = 5.0,
    ):
        self.exe_path = exe_path
        self.base_args = list(base_args)
        self.env = env
        self.cwd = cwd
        self.stop_timeout = stop_timeout
        self.config_path: Optional[Path] = None
        self.name = "process"
        self.state = ProcessState.NOT_STARTED
        self.exit_code: Optional[int] = None
        self._proc: Optional[subprocess.Popen] = None
        self._log_file = None
        self._sampler: Optional[ProcessSampler] = None
        self._resource_spec = ResourceSpec()
        self._stopping = threading.Event()
        self._lock = threading.Lock()

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def prepare_config(self, config_text: str) -> Callable[[], None]:
        """Write ``config_text`` to a temp file used on the next start.

        Returns a callable that removes the file again.
        """
        fd, path = tempfile.mkstemp(prefix="testbed-", suffix=self.config_suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(config_text)
        self.config_path = Path(path)

        def _cleanup() -> None:
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass

        return _cleanup

    def config_args(self) -> List[str]:
        return []

    def build_argv(self, params: StartParams) -> List[str]:
        return [self.exe_path, *self.base_args, *self.config_args(), *params.cmd_args]

    def start(self, params: StartParams) -> None:
        if self.state is not ProcessState.NOT_STARTED:
            raise ProcessLaunchError(f"{params.name} already started (state={self.state.value})")
        self.name = params.name
        if params.resource_spec is not None:
            self._resource_spec = params.resource_spec
        argv = self.build_argv(params)
        log_path = Path(params.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_file = open(log_path, "w", encoding="utf-8")
        # Write a small header so users can see what was launched.
        self._log_file.write(f"[launcher] starting {self.name}: {' '.join(argv)}\n")
        self._log_file.flush()
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            self._proc = subprocess.Popen(
                argv, cwd=self.cwd, env=env, stdout=self._log_file, stderr=subprocess.STDOUT
            )
        except OSError as exc:
            self._log_file.close()
            self._log_file = None
            self.state = ProcessState.FAILED
            raise ProcessLaunchError(f"cannot start {self.name}: {exc}") from exc
        try:
            self._sampler = ProcessSampler(self._proc.pid)
        except psutil.NoSuchProcess:
            # Exited before we could attach; the watcher reports the exit code.
            self._sampler = None
        self.state = ProcessState.RUNNING

    def watch_resource_consumption(self) -> None:
        """Sample CPU/RAM every check period until the process is stopped.

        Raises ``ResourceLimitError`` when a limit is exceeded and
        ``ProcessLaunchError`` if the process exits without being stopped.
        """
        period = self._resource_spec.resource_check_period or DEFAULT_CHECK_PERIOD_S
        while not self._stopping.wait(period):
            proc = self._proc
            if proc is None:
                return
            code = proc.poll()
            if code is not None:
                if self._stopping.is_set():
                    return
                self.state = ProcessState.FAILED
                raise ProcessLaunchError(f"{self.name} exited unexpectedly with code {code}")
            with self._lock:
                if self._sampler is None:
                    continue
                sample = self._sampler.sample()
            problem = self._resource_spec.violation(sample)
            if problem:
                self.state = ProcessState.FAILED
                raise ResourceLimitError(f"{self.name}: {problem}")

    def stop(self) -> Optional[int]:
        """Terminate the process and return its exit code.

        Calling ``stop`` on a process that is not running returns the last
        known exit code.
        """
        self._stopping.set()
        proc = self._proc
        if proc is None or self.state is ProcessState.STOPPED:
            return self.exit_code
        try:
            self.exit_code = _terminate_process(proc, self.stop_timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            self.state = ProcessState.FAILED
            raise ProcessStopError(f"cannot stop {self.name}: {exc}") from exc
        finally:
            if self._log_file:
                self._log_file.close()
                self._log_file = None
        if self.state is ProcessState.RUNNING:
            self.state = ProcessState.STOPPED
        return self.exit_code

    def get_resource_consumption(self) -> str:
        if self.state is ProcessState.NOT_STARTED:
            return f"{self.name} not started"
        with self._lock:
            last = self._sampler.last if self._sampler else None
        if last is None:
            return f"{self.name} RAM (RES):   0 MiB, CPU:  0.0%"
        return f"{self.name} RAM (RES):{last.ram_bytes // MIB:4d} MiB, CPU:{last.cpu_percent:5.1f}%"

    def get_total_consumption(self) -> ResourceConsumption:
        with self._lock:
            return self._sampler.totals() if self._sampler else ResourceConsumption()


class CollectorRunner(ProcessRunner):
    """The telemetry agent under test, e.g. an OpenTelemetry collector build."""

    def config_args(self) -> List[str]:
        if self.config_path is None:
            return []
        return ["--config", str(self.config_path)]


class PrometheusRunner(ProcessRunner):
    """A Prometheus server scraping the agent and serving its web endpoint."""

    def __init__(
        self,
        exe_path: str,
        listen_port: int = 8080,
        listen_host: str = "127.0.0.1",
        storage_path: Optional[Path] = None,
        **kwargs,
    ):
        super().__init__(exe_path, **kwargs)
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.storage_path = storage_path

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return Endpoint(self.listen_host, self.listen_port)

    def config_args(self) -> List[str]:
        args: List[str] = []
        if self.config_path is not None:
            args.append(f"--config.file={self.config_path}")
        if self.storage_path is not None:
            args.append(f"--storage.tsdb.path={self.storage_path}")
        return args


def _terminate_process(proc: subprocess.Popen, timeout: float = 5.0) -> Optional[int]:
    if proc.poll() is not None:
        return proc.returncode
    proc.terminate()
    try:
        return proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        return proc.wait(timeout=timeout)
