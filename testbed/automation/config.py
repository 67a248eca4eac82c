#!/usr/bin/env python3
"""Scenario YAML loading and run-duration configuration."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from testbed.automation.errors import ConfigError

CONFIG_ROOT = Path(__file__).resolve().parents[1] / "configs" / "scenarios"
DURATION_ENV = "TEST_DURATION"
DEFAULT_DURATION = "15s"
ALLOWED_SCENARIO_KEYS = {
    "scenario",
    "description",
    "agent",
    "scraper",
    "sender",
    "receiver",
    "load",
    "resources",
    "validation",
    "notes",
}

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a Go-style duration string (``15s``, ``1m30s``, ``250ms``) to seconds."""
    value = text.strip()
    if value == "0":
        return 0.0
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if not value or pos != len(value):
        raise ConfigError(f"invalid duration {text!r}")
    return total


def duration_from_env(env: Optional[Mapping[str, str]] = None) -> float:
    env = os.environ if env is None else env
    raw = env.get(DURATION_ENV) or DEFAULT_DURATION
    try:
        seconds = parse_duration(raw)
    except ConfigError:
        raise ConfigError(f"Invalid {DURATION_ENV}: {raw}. Expecting a valid duration string.") from None
    if seconds <= 0:
        raise ConfigError(f"Invalid {DURATION_ENV}: {raw}. Duration must be positive.")
    return seconds


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_SCENARIO_KEYS)
    if unknown:
        print(
            f"[config] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def load_scenario_config(name: Optional[str], path_override: Optional[str] = None) -> Dict:
    if path_override:
        cfg_path = Path(path_override)
    elif name:
        cfg_path = CONFIG_ROOT / f"{name}.yaml"
    else:
        raise ConfigError("either a scenario name or a config path is required")
    if not cfg_path.exists():
        raise ConfigError(f"scenario config not found: {cfg_path}")
    raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ConfigError(f"scenario config {cfg_path} must be a mapping")
    _warn_unknown_keys(str(cfg_path), raw)
    raw.setdefault("scenario", name or cfg_path.stem)
    for section in ("agent", "sender", "receiver"):
        if not isinstance(raw.get(section), dict):
            raise ConfigError(f"scenario config {cfg_path} is missing the '{section}' section")
    raw["_config_dir"] = str(cfg_path.resolve().parent)
    return raw


def read_process_config(section: Dict, config_dir: Path) -> Optional[str]:
    """Return the text of the config file a process section points at, if any."""
    path_value = section.get("config_file")
    if not path_value:
        return None
    path = Path(os.path.expandvars(str(path_value))).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    return path.read_text(encoding="utf-8")
