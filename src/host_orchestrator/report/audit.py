from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from host_orchestrator.core.serialization import canonical_json
from host_orchestrator.core.types import RunReport


@dataclass(frozen=True)
class AuditLogger:
    """
    JSON line audit logger.

    Each call appends one JSON object per line.
    """

    path: Path

    def log(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["ts_unix"] = int(time.time())
        line = canonical_json(payload)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def log_report(self, run_id: str, report: RunReport) -> None:
        """One step event per outcome, then the run summary."""
        for position, outcome in enumerate(report.outcomes):
            self.log(
                {
                    "event": "step",
                    "run_id": run_id,
                    "position": position,
                    "kind": outcome.step.intent.kind,
                    "target": outcome.step.intent.target,
                    "backend": outcome.step.backend,
                    "status": outcome.status,
                    "classification": outcome.classification,
                    "detail": outcome.detail,
                }
            )
        self.log(
            {
                "event": "run",
                "run_id": run_id,
                "status": report.status,
                "policy": report.policy,
                "cancelled": report.cancelled,
                "steps": len(report.outcomes),
                "unsatisfied": [f"{s.intent.kind}:{s.intent.target}" for s in report.unsatisfied],
            }
        )


def read_events(path: Path) -> list[dict[str, Any]]:
    """Load every event of an audit file, oldest first."""
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
