#!/usr/bin/env python3
"""Passthrough OTLP/HTTP relay: accept POSTs and forward them downstream.

Stands in for the agent when no collector build is at hand. Each request is
forwarded synchronously, so once the sender sees a 2xx the downstream backend
has already counted the items.
"""

import argparse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import requests


def make_handler(forward_url: str, timeout: float):
    session = requests.Session()

    class RelayHandler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            headers = {"Content-Type": self.headers.get("Content-Type", "application/json")}
            try:
                resp = session.post(forward_url, data=body, headers=headers, timeout=timeout)
                status, reply = resp.status_code, resp.content
            except requests.RequestException as exc:
                print(f"[relay] forward failed: {exc}", flush=True)
                status, reply = 502, b"{}"
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(reply)))
            self.end_headers()
            self.wfile.write(reply)

        def log_message(self, format, *args):
            return

    return RelayHandler


def parse_args():
    parser = argparse.ArgumentParser(description="OTLP/HTTP passthrough relay")
    parser.add_argument("--listen-host", default="127.0.0.1")
    parser.add_argument("--listen-port", type=int, required=True)
    parser.add_argument("--forward-url", required=True, help="e.g. http://127.0.0.1:4319/v1/metrics")
    parser.add_argument("--timeout", type=float, default=5.0)
    return parser.parse_args()


def main():
    args = parse_args()
    server = ThreadingHTTPServer((args.listen_host, args.listen_port), make_handler(args.forward_url, args.timeout))
    server.daemon_threads = True
    print(f"Relay listening on {args.listen_host}:{args.listen_port} -> {args.forward_url}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
