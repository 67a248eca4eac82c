#!/usr/bin/env python3
"""Resource expectations and CPU/RAM sampling for managed processes."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional

import psutil

DEFAULT_CHECK_PERIOD_S = 3.0
MIB = 1024 * 1024


@dataclass(frozen=True)
class ResourceSpec:
    # Percent of a single core; 0 disables the check.
    expected_max_cpu: float = 0.0
    # Bytes of resident memory; 0 disables the check.
    expected_max_ram: int = 0
    resource_check_period: float = DEFAULT_CHECK_PERIOD_S

    def clamped(self, duration: float) -> "ResourceSpec":
        """Return a copy whose check period is no longer than ``duration``."""
        if duration <= 0:
            raise ValueError(f"run duration must be positive, got {duration}")
        period = self.resource_check_period if self.resource_check_period > 0 else DEFAULT_CHECK_PERIOD_S
        return replace(self, resource_check_period=min(period, duration))

    def violation(self, sample: "ResourceSample") -> Optional[str]:
        if self.expected_max_cpu > 0 and sample.cpu_percent > self.expected_max_cpu:
            return f"CPU consumption is {sample.cpu_percent:.1f}%, max expected is {self.expected_max_cpu:g}%"
        if self.expected_max_ram > 0 and sample.ram_bytes > self.expected_max_ram:
            return (
                f"RAM consumption is {sample.ram_bytes // MIB} MiB, "
                f"max expected is {self.expected_max_ram // MIB} MiB"
            )
        return None

    @classmethod
    def from_config(cls, raw: Optional[dict]) -> "ResourceSpec":
        raw = raw or {}
        ram = int(raw.get("expected_max_ram_mib", 0)) * MIB
        return cls(
            expected_max_cpu=float(raw.get("expected_max_cpu", 0)),
            expected_max_ram=ram,
            resource_check_period=float(raw.get("resource_check_period_s", DEFAULT_CHECK_PERIOD_S)),
        )


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float
    ram_bytes: int


@dataclass
class ResourceConsumption:
    cpu_percent_avg: float = 0.0
    cpu_percent_max: float = 0.0
    ram_mib_avg: float = 0.0
    ram_mib_max: float = 0.0
    samples: int = 0


class ProcessSampler:
    """Sample a process tree via psutil and keep running totals."""

    def __init__(self, pid: int):
        self._process = psutil.Process(pid)
        self._cpu_total = 0.0
        self._ram_total = 0
        self._cpu_max = 0.0
        self._ram_max = 0
        self._count = 0
        self.last: Optional[ResourceSample] = None
        # The first cpu_percent(None) call always reports 0.0; prime the counters.
        for proc in self._collect():
            try:
                proc.cpu_percent(interval=None)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

    def _collect(self) -> List[psutil.Process]:
        try:
            return [self._process] + self._process.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return [self._process]

    def sample(self) -> ResourceSample:
        cpu = 0.0
        ram = 0
        for proc in self._collect():
            try:
                cpu += proc.cpu_percent(interval=None)
                ram += proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        sample = ResourceSample(cpu_percent=cpu, ram_bytes=ram)
        self._cpu_total += cpu
        self._ram_total += ram
        self._cpu_max = max(self._cpu_max, cpu)
        self._ram_max = max(self._ram_max, ram)
        self._count += 1
        self.last = sample
        return sample

    def totals(self) -> ResourceConsumption:
        if not self._count:
            return ResourceConsumption()
        return ResourceConsumption(
            cpu_percent_avg=self._cpu_total / self._count,
            cpu_percent_max=self._cpu_max,
            ram_mib_avg=self._ram_total / self._count / MIB,
            ram_mib_max=self._ram_max / MIB,
            samples=self._count,
        )
