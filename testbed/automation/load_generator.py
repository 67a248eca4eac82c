#!/usr/bin/env python3
"""Synthetic metric load sent to the agent over OTLP/HTTP (JSON encoding)."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from itertools import count
from typing import Dict, List, Optional, Tuple

import requests

from testbed.automation.progress import RunLog
from testbed.automation.waiting import Endpoint

OTLP_METRICS_PATH = "/v1/metrics"


@dataclass
class LoadOptions:
    data_items_per_second: int = 1000
    items_per_batch: int = 100
    parallel: int = 1

    @classmethod
    def from_config(cls, raw: Optional[Dict]) -> "LoadOptions":
        raw = raw or {}
        return cls(
            data_items_per_second=int(raw.get("data_items_per_second", 1000)),
            items_per_batch=int(raw.get("items_per_batch", 100)),
            parallel=int(raw.get("parallel", 1)),
        )


def _attr(key: str, value: str) -> Dict:
    return {"key": key, "value": {"stringValue": value}}


class PerfTestDataProvider:
    """Builds gauge batches; every data point is one data item."""

    def __init__(self, options: LoadOptions, service_name: str = "load-generator"):
        self.options = options
        self.service_name = service_name
        self._batch_seq = count()
        self._lock = threading.Lock()

    def generate_metrics(self) -> Tuple[Dict, int]:
        with self._lock:
            batch_index = next(self._batch_seq)
        now_ns = str(time.time_ns())
        points = [
            {
                "timeUnixNano": now_ns,
                "asInt": str(batch_index * self.options.items_per_batch + idx),
                "attributes": [_attr("batch_index", f"batch_{batch_index}"), _attr("item_index", f"item_{idx}")],
            }
            for idx in range(self.options.items_per_batch)
        ]
        payload = {
            "resourceMetrics": [
                {
                    "resource": {"attributes": [_attr("service.name", self.service_name)]},
                    "scopeMetrics": [
                        {
                            "scope": {"name": "testbed.load_generator"},
                            "metrics": [{"name": "load_generator_gauge", "gauge": {"dataPoints": points}}],
                        }
                    ],
                }
            ]
        }
        return payload, len(points)


class OTLPHTTPMetricDataSender:
    protocol_name = "otlp"

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._local = threading.local()

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return Endpoint(self.host, self.port)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{OTLP_METRICS_PATH}"

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def send(self, payload: Dict) -> None:
        resp = self._session().post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


class LoadGenerator:
    """Sends batches at a target rate split across ``parallel`` worker threads."""

    def __init__(self, provider: PerfTestDataProvider, sender, log: Optional[RunLog] = None):
        self.provider = provider
        self.sender = sender
        self._log = log
        self._stop = threading.Event()
        self._workers: List[threading.Thread] = []
        self._count_lock = threading.Lock()
        self._sent = 0
        self._failed = 0
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

    def start(self, options: LoadOptions) -> None:
        if self._workers:
            return
        if options.data_items_per_second <= 0 or options.items_per_batch <= 0 or options.parallel <= 0:
            raise ValueError(f"invalid load options {options}")
        self.provider.options = options
        # Each worker sends one batch every `interval` seconds.
        interval = options.items_per_batch * options.parallel / options.data_items_per_second
        self._started_at = time.monotonic()
        if self._log:
            self._log.info(
                "load",
                f"starting load: {options.data_items_per_second} items/sec, "
                f"{options.items_per_batch} items/batch, parallel={options.parallel}",
            )
        for idx in range(options.parallel):
            worker = threading.Thread(target=self._run, args=(interval,), name=f"load-{idx}", daemon=True)
            self._workers.append(worker)
            worker.start()

    def _run(self, interval: float) -> None:
        next_send = time.monotonic()
        while not self._stop.is_set():
            payload, items = self.provider.generate_metrics()
            try:
                self.sender.send(payload)
            except requests.RequestException as exc:
                with self._count_lock:
                    self._failed += items
                if self._log:
                    self._log.info("load", f"send failed: {exc}")
            else:
                with self._count_lock:
                    self._sent += items
            next_send += interval
            delay = next_send - time.monotonic()
            if delay < 0:
                # Fell behind; don't try to catch up with a burst.
                next_send = time.monotonic()
                continue
            self._stop.wait(delay)

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        for worker in self._workers:
            worker.join()
        self._stopped_at = time.monotonic()
        if self._log and self._workers:
            self._log.info("load", f"stopped load generator: {self.get_stats()}")

    def data_items_sent(self) -> int:
        with self._count_lock:
            return self._sent

    def data_items_failed(self) -> int:
        with self._count_lock:
            return self._failed

    def get_stats(self) -> str:
        sent = self.data_items_sent()
        if self._started_at is None:
            return f"Sent:{sent:8d} items"
        end = self._stopped_at or time.monotonic()
        elapsed = end - self._started_at
        rate = sent / elapsed if elapsed > 0 else 0.0
        return f"Sent:{sent:8d} items ({rate:.0f}/sec)"
