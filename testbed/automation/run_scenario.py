#!/usr/bin/env python3
"""Run a telemetry pipeline benchmark scenario defined in testbed/configs/scenarios/*.yaml.

Typical usage:
  OTELCOL_BIN=~/bin/otelcontribcol PROMETHEUS_BIN=~/bin/prometheus \
    python3 -m testbed.automation.run_scenario --scenario otlp_prometheus

  # Self-contained run using the bundled passthrough relay as the agent
  TEST_DURATION=5s python3 -m testbed.automation.run_scenario --scenario relay_smoke

Outputs land in results/<scenario>/: agent.log, scraper.log (when a scraper is
configured), backend.log, progress.log, plan.json and run_result.json.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from testbed.automation.config import (
    duration_from_env,
    load_scenario_config,
    parse_duration,
    read_process_config,
)
from testbed.automation.errors import ConfigError, TestbedError
from testbed.automation.load_generator import (
    OTLP_METRICS_PATH,
    LoadOptions,
    OTLPHTTPMetricDataSender,
    PerfTestDataProvider,
)
from testbed.automation.mock_backend import OTLPHTTPDataReceiver
from testbed.automation.process_utils import CollectorRunner, ProcessRunner, PrometheusRunner
from testbed.automation.resources import ResourceSpec
from testbed.automation.results import ResultRecorder
from testbed.automation.scenario import RESULTS_ROOT, Scenario

RELAY_SCRIPT = Path(__file__).resolve().parents[1] / "workloads" / "relay" / "otlp_relay.py"
DEFAULT_WAIT_TIMEOUT_S = 10.0
RESULT_DIR_ENV = "TESTBED_RESULT_DIR"


def _exe_path(section: Dict, label: str) -> str:
    raw = section.get("exe_path")
    if not raw:
        raise ConfigError(f"{label} section needs 'exe_path'")
    value = os.path.expandvars(str(raw))
    if "$" in value:
        raise ConfigError(f"{label} exe_path {raw!r} references an unset environment variable")
    return str(Path(value).expanduser())


def build_agent_runner(cfg: Dict, result_dir: Path) -> ProcessRunner:
    section = cfg["agent"]
    env = {RESULT_DIR_ENV: str(result_dir)}
    kind = section.get("kind", "collector")
    if kind == "relay":
        return CollectorRunner(sys.executable, base_args=[str(RELAY_SCRIPT)], env=env)
    if kind == "collector":
        return CollectorRunner(_exe_path(section, "agent"), env=env)
    raise ConfigError(f"unsupported agent kind {kind}")


def build_scraper_runner(cfg: Dict, result_dir: Path) -> Optional[ProcessRunner]:
    section = cfg.get("scraper")
    if not section:
        return None
    kind = section.get("kind", "prometheus")
    if kind != "prometheus":
        raise ConfigError(f"unsupported scraper kind {kind}")
    return PrometheusRunner(
        _exe_path(section, "scraper"),
        listen_port=int(section.get("listen_port", 8080)),
        storage_path=result_dir / "prometheus-data",
    )


def agent_args(cfg: Dict) -> List[str]:
    section = cfg["agent"]
    args = [str(arg) for arg in section.get("args", [])]
    if section.get("kind") == "relay":
        receiver = cfg["receiver"]
        forward_url = f"http://{receiver.get('host', '127.0.0.1')}:{receiver['port']}{OTLP_METRICS_PATH}"
        args = [
            "--listen-host",
            str(cfg["sender"].get("host", "127.0.0.1")),
            "--listen-port",
            str(cfg["sender"]["port"]),
            "--forward-url",
            forward_url,
        ] + args
    return args


def scraper_args(cfg: Dict) -> List[str]:
    section = cfg.get("scraper") or {}
    args = [f"--web.listen-address=:{int(section.get('listen_port', 8080))}"]
    args.extend(str(arg) for arg in section.get("args", []))
    return args


def build_plan(cfg: Dict, duration: float, result_dir: Path) -> Dict:
    return {
        "scenario": cfg["scenario"],
        "duration_s": duration,
        "result_dir": str(result_dir),
        "agent": {**cfg["agent"], "resolved_args": agent_args(cfg)},
        "scraper": {**cfg["scraper"], "resolved_args": scraper_args(cfg)} if cfg.get("scraper") else None,
        "sender": cfg["sender"],
        "receiver": cfg["receiver"],
        "load": cfg.get("load", {}),
        "resources": cfg.get("resources", {}),
    }


def _log_received_samples(scenario: Scenario, limit: int) -> None:
    for payload in scenario.mock_backend.received_metrics[:limit]:
        for rm in payload.get("resourceMetrics", []):
            attrs = {
                attr.get("key"): next(iter((attr.get("value") or {}).values()), None)
                for attr in (rm.get("resource") or {}).get("attributes", [])
            }
            scenario.log.info("backend", f"metric resource: {attrs}")


def execute_scenario(
    scenario_name: Optional[str],
    config_override: Optional[str] = None,
    duration: Optional[str] = None,
    dry_run: bool = False,
    results_root: Optional[str] = None,
) -> str:
    cfg = load_scenario_config(scenario_name, config_override)
    config_dir = Path(cfg.pop("_config_dir"))
    name = str(cfg["scenario"])
    duration_s = parse_duration(duration) if duration else duration_from_env()
    if duration_s <= 0:
        raise ConfigError(f"duration must be positive, got {duration}")
    root = Path(results_root) if results_root else RESULTS_ROOT
    result_dir = (root / name).resolve()
    result_dir.mkdir(parents=True, exist_ok=True)

    plan = build_plan(cfg, duration_s, result_dir)
    (result_dir / "plan.json").write_text(json.dumps(plan, indent=2), encoding="utf-8")
    if dry_run:
        try:
            print(json.dumps(plan, indent=2))
        except BrokenPipeError:
            pass
        return str(result_dir)

    sender_cfg = cfg["sender"]
    receiver_cfg = cfg["receiver"]
    sender = OTLPHTTPMetricDataSender(str(sender_cfg.get("host", "127.0.0.1")), int(sender_cfg["port"]))
    receiver = OTLPHTTPDataReceiver(int(receiver_cfg["port"]), host=str(receiver_cfg.get("host", "127.0.0.1")))
    options = LoadOptions.from_config(cfg.get("load"))
    validation = cfg.get("validation") or {}
    wait_timeout = float(validation.get("wait_timeout_s", DEFAULT_WAIT_TIMEOUT_S))

    captured: Optional[BaseException] = None
    with contextlib.ExitStack() as stack:
        agent = build_agent_runner(cfg, result_dir)
        agent_config = read_process_config(cfg["agent"], config_dir)
        if agent_config is not None:
            stack.callback(agent.prepare_config(agent_config))
        scraper = build_scraper_runner(cfg, result_dir)
        if scraper is not None:
            scraper_config = read_process_config(cfg["scraper"], config_dir)
            if scraper_config is not None:
                stack.callback(scraper.prepare_config(scraper_config))

        scenario = Scenario(
            name,
            PerfTestDataProvider(options),
            sender,
            receiver,
            agent,
            ResourceSpec.from_config(cfg.get("resources")),
            duration=duration_s,
            scraper_proc=scraper,
            results_root=root,
            progress_log=True,
        )
        recorder = ResultRecorder(scenario.result_dir, plan)
        try:
            scenario.start_backend()
            sample_count = int(validation.get("log_received_samples", 0))
            if sample_count:
                scenario.mock_backend.enable_recording()
            scenario.start_agent(*agent_args(cfg))
            if scraper is not None:
                scenario.start_scraper(*scraper_args(cfg))
            scenario.start_load(options)

            scenario.sleep(scenario.duration)
            scenario.stop_load()

            scenario.wait_for_n(
                lambda: scenario.load_generator.data_items_sent() > 0, wait_timeout, "load generator started"
            )
            scenario.wait_for_n(
                lambda: scenario.load_generator.data_items_sent() == scenario.mock_backend.data_items_received(),
                wait_timeout,
                "all data items received",
            )
            scenario.stop_agent()
            scenario.stop_scraper()
            if sample_count:
                _log_received_samples(scenario, sample_count)
        except BaseException as exc:
            captured = exc
            scenario.log.error("runner", f"{type(exc).__name__}: {exc}")
        finally:
            scenario.stop()
            recorder.capture(scenario.summary())
            recorder.finalize(captured)

    if captured is not None:
        raise captured
    if scenario.failure.is_fired:
        raise TestbedError(f"scenario {name} failed: {scenario.error_cause}")
    return str(result_dir)


def run_scenario(args) -> None:
    try:
        execute_scenario(
            scenario_name=args.scenario,
            config_override=args.config,
            duration=args.duration,
            dry_run=args.dry_run,
            results_root=args.results_root,
        )
    except TestbedError as exc:
        print(f"[run_scenario] error: {exc}", file=sys.stderr)
        print("[run_scenario] hint: check results/<scenario>/agent.log and progress.log for details", file=sys.stderr)
        raise SystemExit(2)


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run a telemetry pipeline benchmark scenario")
    parser.add_argument("--scenario", help="Scenario name under testbed/configs/scenarios")
    parser.add_argument("--config", help="Explicit scenario YAML path")
    parser.add_argument("--duration", help="Go-style duration, overrides TEST_DURATION (e.g. 30s, 2m)")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--results-root", default=None, help="Directory holding per-scenario result dirs")
    args = parser.parse_args(argv)
    if not args.scenario and not args.config:
        parser.error("one of --scenario or --config is required")
    return args


def main() -> None:
    run_scenario(parse_args())


if __name__ == "__main__":
    main()
