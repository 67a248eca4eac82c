#!/usr/bin/env python3
"""Mock ingestion backend that counts OTLP/HTTP JSON metric data points."""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Dict, List, Optional

from testbed.automation.load_generator import OTLP_METRICS_PATH
from testbed.automation.waiting import Endpoint

_POINT_KINDS = ("gauge", "sum", "histogram", "exponentialHistogram", "summary")


def count_data_points(payload: Dict) -> int:
    total = 0
    for rm in payload.get("resourceMetrics", []):
        for sm in rm.get("scopeMetrics", []):
            for metric in sm.get("metrics", []):
                for kind in _POINT_KINDS:
                    body = metric.get(kind)
                    if isinstance(body, dict):
                        total += len(body.get("dataPoints", []))
    return total


class OTLPHTTPDataReceiver:
    protocol_name = "otlp"

    def __init__(self, port: int, host: str = "127.0.0.1"):
        self.host = host
        self.port = port
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, self.port)

    def start(self, consume: Callable[[Dict], None]) -> None:
        class _Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                if self.path != OTLP_METRICS_PATH:
                    self.send_error(404)
                    return
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length)
                try:
                    payload = json.loads(body or b"{}")
                except ValueError:
                    # Covers both malformed JSON and undecodable bytes.
                    self.send_error(400, "expected OTLP JSON body")
                    return
                if not isinstance(payload, dict):
                    self.send_error(400, "expected an ExportMetricsServiceRequest object")
                    return
                consume(payload)
                reply = b"{}"
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(reply)))
                self.end_headers()
                self.wfile.write(reply)

            def log_message(self, format, *args):
                return

        self._server = ThreadingHTTPServer((self.host, self.port), _Handler)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="mock-backend", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join()
        self._server = None


class MockBackend:
    def __init__(self, log_file_path: Path, receiver: OTLPHTTPDataReceiver):
        self.log_file_path = Path(log_file_path)
        self.receiver = receiver
        self.received_metrics: List[Dict] = []
        self._recording = False
        self._lock = threading.Lock()
        self._received = 0
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._log_file = None

    def _write_log(self, message: str) -> None:
        if self._log_file is None:
            return
        ts = datetime.now().isoformat(timespec="seconds")
        self._log_file.write(f"[{ts}] {message}\n")
        self._log_file.flush()

    def start(self) -> None:
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        self._log_file = open(self.log_file_path, "w", encoding="utf-8")
        self._write_log(f"[backend] starting mock backend on {self.receiver.endpoint}")
        try:
            self.receiver.start(self._consume)
        except OSError:
            self._log_file.close()
            self._log_file = None
            raise
        self._started_at = time.monotonic()

    def _consume(self, payload: Dict) -> None:
        items = count_data_points(payload)
        with self._lock:
            self._received += items
            if self._recording:
                self.received_metrics.append(payload)

    def enable_recording(self) -> None:
        with self._lock:
            self._recording = True

    def stop(self) -> None:
        if self._started_at is None or self._stopped_at is not None:
            return
        self.receiver.stop()
        self._stopped_at = time.monotonic()
        self._write_log(f"[backend] stopped mock backend: {self.get_stats()}")
        if self._log_file:
            self._log_file.close()
            self._log_file = None

    def data_items_received(self) -> int:
        with self._lock:
            return self._received

    def get_stats(self) -> str:
        received = self.data_items_received()
        if self._started_at is None:
            return f"Received:{received:8d} items"
        end = self._stopped_at or time.monotonic()
        elapsed = end - self._started_at
        rate = received / elapsed if elapsed > 0 else 0.0
        return f"Received:{received:8d} items ({rate:.0f}/sec)"
