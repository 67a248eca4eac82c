#!/usr/bin/env python3
"""Write the raw outcome of a scenario run next to its logs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ResultRecorder:
    result_dir: Path
    plan: Dict
    summary: Dict = field(default_factory=dict)
    log_files: List[str] = field(default_factory=list)

    def capture(self, scenario_summary: Dict) -> None:
        self.summary.update(scenario_summary)
        self.log_files = sorted(p.name for p in self.result_dir.glob("*.log"))

    def finalize(self, runner_exception: Optional[BaseException] = None) -> Path:
        payload = {
            "plan": self.plan,
            "summary": self.summary,
            "log_files": self.log_files,
            "generated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        if runner_exception is not None:
            payload["runner_exception"] = {
                "type": type(runner_exception).__name__,
                "message": str(runner_exception),
            }
        out = self.result_dir / "run_result.json"
        out.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return out


def load_result(result_dir: Path) -> Optional[Dict]:
    path = Path(result_dir) / "run_result.json"
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
