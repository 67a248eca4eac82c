"""Shared fixtures and in-memory stand-ins for scenario participants."""

import socket
import threading
from typing import List, Optional

import pytest

from testbed.automation.process_utils import ProcessState
from testbed.automation.resources import ResourceConsumption
from testbed.automation.waiting import Endpoint


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return get_free_port()


@pytest.fixture
def listening_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    yield sock
    sock.close()


class FakeRunner:
    """Records lifecycle calls instead of spawning a process."""

    def __init__(self, name: str, calls: List[str], endpoint: Optional[Endpoint] = None,
                 start_error: Optional[Exception] = None, stop_error: Optional[Exception] = None,
                 watch_error: Optional[Exception] = None, watch_delay: float = 0.1):
        self.name = name
        self.calls = calls
        self.endpoint = endpoint
        self.start_error = start_error
        self.stop_error = stop_error
        self.watch_error = watch_error
        self.watch_delay = watch_delay
        self.state = ProcessState.NOT_STARTED
        self.exit_code = None
        self.params = None
        self._stopped = threading.Event()

    def start(self, params):
        self.calls.append(f"{self.name}.start")
        self.params = params
        if self.start_error:
            raise self.start_error
        self.state = ProcessState.RUNNING

    def watch_resource_consumption(self):
        if self.watch_error is None:
            self._stopped.wait()
            return
        if not self._stopped.wait(self.watch_delay):
            self.state = ProcessState.FAILED
            raise self.watch_error

    def stop(self):
        self.calls.append(f"{self.name}.stop")
        self._stopped.set()
        if self.stop_error:
            raise self.stop_error
        if self.state is ProcessState.RUNNING:
            self.state = ProcessState.STOPPED
            self.exit_code = 0
        return self.exit_code

    def get_resource_consumption(self):
        return f"{self.name} RAM (RES):  10 MiB, CPU:  1.0%"

    def get_total_consumption(self):
        return ResourceConsumption()


class FakeLoadGenerator:
    def __init__(self, calls: List[str], stop_error: Optional[Exception] = None):
        self.calls = calls
        self.stop_error = stop_error
        self.sent = 0
        self.options = None

    def start(self, options):
        self.calls.append("load.start")
        self.options = options

    def stop(self):
        self.calls.append("load.stop")
        if self.stop_error:
            raise self.stop_error

    def get_stats(self):
        return f"Sent:{self.sent:8d} items"

    def data_items_sent(self):
        return self.sent


class FakeBackend:
    def __init__(self, calls: List[str], start_error: Optional[Exception] = None,
                 stop_error: Optional[Exception] = None):
        self.calls = calls
        self.start_error = start_error
        self.stop_error = stop_error
        self.received = 0
        self.received_metrics = []

    def start(self):
        self.calls.append("backend.start")
        if self.start_error:
            raise self.start_error

    def stop(self):
        self.calls.append("backend.stop")
        if self.stop_error:
            raise self.stop_error

    def enable_recording(self):
        self.calls.append("backend.enable_recording")

    def get_stats(self):
        return f"Received:{self.received:8d} items"

    def data_items_received(self):
        return self.received


class FakeEndpointHolder:
    def __init__(self, endpoint: Optional[Endpoint]):
        self.endpoint = endpoint


@pytest.fixture
def calls() -> List[str]:
    return []


@pytest.fixture
def make_scenario(tmp_path, calls):
    """Build a Scenario wired to fakes; every scenario is stopped afterwards."""
    from testbed.automation.resources import ResourceSpec
    from testbed.automation.scenario import Scenario

    created = []

    def _make(duration=2.0, sender_endpoint=None, scraper=False, agent_kwargs=None,
              scraper_kwargs=None, load_kwargs=None, backend_kwargs=None, resource_spec=None):
        agent = FakeRunner("agent", calls, **(agent_kwargs or {}))
        scraper_runner = FakeRunner("scraper", calls, **(scraper_kwargs or {})) if scraper else None
        scenario = Scenario(
            "unit",
            None,
            FakeEndpointHolder(sender_endpoint),
            FakeEndpointHolder(Endpoint("127.0.0.1", 1)),
            agent,
            resource_spec or ResourceSpec(resource_check_period=0.05),
            duration=duration,
            scraper_proc=scraper_runner,
            results_root=tmp_path,
            load_generator=FakeLoadGenerator(calls, **(load_kwargs or {})),
            mock_backend=FakeBackend(calls, **(backend_kwargs or {})),
        )
        created.append(scenario)
        return scenario

    yield _make
    for scenario in created:
        scenario.stop()
