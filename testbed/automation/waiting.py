#!/usr/bin/env python3
"""Condition polling with exponential backoff and TCP readiness probes."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from testbed.automation.errors import ConditionTimeout
from testbed.automation.signals import FailureSignal

INITIAL_BACKOFF_S = 0.005
MAX_BACKOFF_S = 0.5
READINESS_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int
    network: str = "tcp"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def backoff_intervals(initial: float = INITIAL_BACKOFF_S, ceiling: float = MAX_BACKOFF_S) -> Iterator[float]:
    """Yield 5ms, 10ms, 20ms ... doubling until pinned at ``ceiling``."""
    interval = initial
    while True:
        yield interval
        interval = min(interval * 2, ceiling)


def wait_for(
    predicate: Callable[[], bool],
    timeout: float,
    description: object,
    failure: Optional[FailureSignal] = None,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``predicate`` until it is true.

    Returns ``False`` without recording anything if ``failure`` fires while
    waiting; the first failure has already been logged. Raises
    ``ConditionTimeout`` once ``timeout`` seconds pass without the predicate
    ever holding.
    """
    start = clock()
    for interval in backoff_intervals():
        if predicate():
            return True
        if clock() - start > timeout:
            raise ConditionTimeout(description, timeout)
        if failure is not None:
            if failure.wait(interval):
                return False
        else:
            time.sleep(interval)
    return False


def tcp_ready(endpoint: Endpoint, connect_timeout: float = 1.0) -> bool:
    """True if something accepts connections on ``endpoint``."""
    try:
        with socket.create_connection((endpoint.host, endpoint.port), timeout=connect_timeout):
            return True
    except OSError:
        return False


def wait_for_endpoint(
    endpoint: Endpoint,
    failure: Optional[FailureSignal] = None,
    timeout: float = READINESS_TIMEOUT_S,
) -> bool:
    return wait_for(
        lambda: tcp_ready(endpoint),
        timeout,
        f"connection to {endpoint.network}:{endpoint}",
        failure,
    )
