#!/usr/bin/env python3
"""Exception types raised while orchestrating a benchmark run."""

from __future__ import annotations


class TestbedError(RuntimeError):
    __test__ = False


class ProcessLaunchError(TestbedError):
    """A managed process could not be spawned or exited on its own."""


class ProcessStopError(TestbedError):
    pass


class ResourceLimitError(TestbedError):
    """A watched process went over its CPU or RAM expectation."""


class ConditionTimeout(TestbedError):
    """A readiness or completion condition never became true in time.

    This is fatal to the run; callers are expected to tear the scenario down
    and exit rather than retry.
    """

    def __init__(self, description: object, timeout: float):
        self.description = description
        self.timeout = timeout
        super().__init__(f"Time out waiting for {description} (after {timeout:g}s)")


class ConfigError(TestbedError):
    pass
