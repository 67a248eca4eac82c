#!/usr/bin/env python3
"""Scenario controller: sequences the backend, agent, scraper and load.

A ``Scenario`` owns every participant of one benchmark run. The driver calls
the ``start_*`` methods in dependency order (backend, agent, scraper, load),
waits on application-level conditions with ``wait_for_n`` and finally calls
``stop``, which tears everything down in the reverse direction of data flow.

Failures detected in background threads (process crashes, resource limit
violations, stop errors) are routed into a single ``FailureSignal``. Once it
fires, every pending ``sleep`` and ``wait_for_n`` returns early.
"""

from __future__ import annotations

import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from testbed.automation.config import duration_from_env
from testbed.automation.errors import ProcessLaunchError, TestbedError
from testbed.automation.load_generator import LoadGenerator, LoadOptions
from testbed.automation.mock_backend import MockBackend
from testbed.automation.process_utils import ProcessRunner, ProcessState, StartParams
from testbed.automation.progress import RunLog
from testbed.automation.resources import ResourceSpec
from testbed.automation.signals import FailureSignal
from testbed.automation.waiting import READINESS_TIMEOUT_S, Endpoint, wait_for, wait_for_endpoint

RESULTS_ROOT = Path("results")
WATCHER_JOIN_TIMEOUT_S = 5.0


class StatsSampler:
    """Periodically log a joined snapshot line until stopped."""

    def __init__(self, period: float, snapshot: Callable[[], str], log: RunLog):
        self.period = period
        self._snapshot = snapshot
        self._log = log
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name="stats-sampler", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._done.wait(self.period):
            try:
                line = self._snapshot()
            except Exception as exc:
                # Keep ticking after a failed snapshot.
                self._log.error("stats", f"snapshot failed: {exc}")
                continue
            self._log.info("stats", line)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def stop(self) -> None:
        self._done.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()


class Scenario:
    def __init__(
        self,
        name: str,
        data_provider,
        sender,
        receiver,
        agent_proc: ProcessRunner,
        resource_spec: ResourceSpec,
        duration: Optional[float] = None,
        scraper_proc: Optional[ProcessRunner] = None,
        results_root: Path = RESULTS_ROOT,
        progress_log: bool = False,
        load_generator: Optional[LoadGenerator] = None,
        mock_backend: Optional[MockBackend] = None,
    ):
        self.name = name
        # Configured via TEST_DURATION; defaults to 15 seconds.
        self.duration = duration if duration is not None else duration_from_env()
        self.start_time = datetime.now()
        self.sender = sender
        self.receiver = receiver
        self.agent_proc = agent_proc
        self.scraper_proc = scraper_proc

        self.result_dir = (Path(results_root) / name).resolve()
        self.result_dir.mkdir(parents=True, exist_ok=True)
        self.log = RunLog(name, self.result_dir / "progress.log" if progress_log else None)
        self.failure = FailureSignal(self.log)

        # Resource check period should not be longer than the entire run.
        self.resource_spec = resource_spec.clamped(self.duration)

        self.load_generator = load_generator or LoadGenerator(data_provider, sender, self.log)
        self.mock_backend = mock_backend or MockBackend(self.compose_result_file_name("backend.log"), receiver)

        self._watchers: List[threading.Thread] = []
        self._stop_lock = threading.Lock()
        self._stopped = False
        self.sampler = StatsSampler(self.resource_spec.resource_check_period, self._stats_line, self.log)
        self.sampler.start()
        self.log.info(
            "scenario",
            f"created scenario duration={self.duration:g}s check_period={self.resource_spec.resource_check_period:g}s "
            f"results={self.result_dir}",
        )

    @property
    def error_cause(self) -> Optional[str]:
        return self.failure.cause

    def compose_result_file_name(self, file_name: str) -> Path:
        return self.result_dir / file_name

    def indicate_error(self, err: object, source: str = "scenario") -> None:
        self.failure.fire(err, source)

    def _stats_line(self) -> str:
        parts = [self.agent_proc.get_resource_consumption()]
        if self.scraper_proc is not None:
            parts.append(self.scraper_proc.get_resource_consumption())
        parts.append(self.load_generator.get_stats())
        parts.append(self.mock_backend.get_stats())
        return " | ".join(parts)

    def _watch(self, runner: ProcessRunner, role: str) -> None:
        try:
            runner.watch_resource_consumption()
        except (TestbedError, OSError) as exc:
            self.indicate_error(exc, role)

    def _start_process(
        self,
        role: str,
        runner: ProcessRunner,
        log_name: str,
        args,
        endpoint: Optional[Endpoint],
    ) -> bool:
        params = StartParams(
            name=role,
            log_file_path=self.compose_result_file_name(log_name),
            cmd_args=list(args),
            resource_spec=self.resource_spec,
        )
        self.log.info("scenario", f"starting {role}")
        try:
            runner.start(params)
        except (TestbedError, OSError) as exc:
            self.indicate_error(exc, role)
            return False

        watcher = threading.Thread(target=self._watch, args=(runner, role), name=f"watch-{role}", daemon=True)
        self._watchers.append(watcher)
        watcher.start()

        if endpoint is None:
            # Nothing to probe (e.g. a sink writing to a file).
            return True
        # We consider the process started once its endpoint accepts connections.
        return wait_for_endpoint(endpoint, self.failure, READINESS_TIMEOUT_S)

    def start_backend(self) -> None:
        self.log.info("scenario", f"starting backend on {self.receiver.endpoint}")
        try:
            self.mock_backend.start()
        except OSError as exc:
            self.indicate_error(f"Cannot start backend: {exc}", "backend")
            raise ProcessLaunchError(f"Cannot start backend: {exc}") from exc

    def start_agent(self, *args: str) -> bool:
        """Start the agent with stdout/stderr going to agent.log.

        The agent is ready once the port we intend to send load to accepts
        connections. Senders without a network endpoint skip the probe.
        """
        return self._start_process("Agent", self.agent_proc, "agent.log", args, self.sender.endpoint)

    def start_scraper(self, *args: str) -> bool:
        if self.scraper_proc is None:
            self.log.info("scenario", "no scraper configured; skipping start")
            return False
        return self._start_process("Scraper", self.scraper_proc, "scraper.log", args, self.scraper_proc.endpoint)

    def start_load(self, options: LoadOptions) -> None:
        self.load_generator.start(options)

    def _best_effort(self, source: str, step: Callable[[], object]) -> None:
        try:
            step()
        except Exception as exc:
            # Teardown must reach every component; record and keep going.
            self.indicate_error(exc, source)

    def stop_load(self) -> None:
        self._best_effort("load", self.load_generator.stop)

    def stop_agent(self) -> None:
        self._best_effort("Agent", self.agent_proc.stop)

    def stop_backend(self) -> None:
        self._best_effort("backend", self.mock_backend.stop)

    def stop_scraper(self) -> None:
        if self.scraper_proc is not None:
            self._best_effort("Scraper", self.scraper_proc.stop)

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until a failure is signaled."""
        self.failure.wait(seconds)

    def wait_for_n(self, predicate: Callable[[], bool], timeout: float, label: object) -> bool:
        """Wait for ``predicate``; ``ConditionTimeout`` is raised on timeout.

        Returns ``False`` if a failure is signaled while waiting. No further
        failure is recorded in that case since the first one is already logged.
        """
        return wait_for(predicate, timeout, label, self.failure)

    def stop(self) -> None:
        """Tear down the run. Safe to call more than once, e.g. from ``finally``."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self.sampler.stop()
        # Load writes into the agent, the agent writes into the backend; the
        # scraper only polls, so it goes last.
        self.stop_load()
        self.stop_agent()
        self.stop_backend()
        self.stop_scraper()

        for watcher in self._watchers:
            watcher.join(timeout=WATCHER_JOIN_TIMEOUT_S)
        if self.failure.is_fired:
            self.log.error("scenario", f"run finished with failure: {self.error_cause}")
        else:
            self.log.info("scenario", "run finished")

    def summary(self) -> Dict:
        processes = {"agent": self.agent_proc}
        if self.scraper_proc is not None:
            processes["scraper"] = self.scraper_proc
        return {
            "scenario": self.name,
            "started_at": self.start_time.isoformat(timespec="seconds"),
            "duration_s": self.duration,
            "resource_spec": asdict(self.resource_spec),
            "items_sent": self.load_generator.data_items_sent(),
            "items_received": self.mock_backend.data_items_received(),
            "processes": {
                role: {
                    "state": runner.state.value,
                    "exit_code": runner.exit_code,
                    "consumption": asdict(runner.get_total_consumption()),
                }
                for role, runner in processes.items()
                if runner.state is not ProcessState.NOT_STARTED
            },
            "failure_cause": self.error_cause,
            "failure_source": self.failure.source,
        }
