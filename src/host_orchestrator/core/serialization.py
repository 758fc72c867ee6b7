from __future__ import annotations

import json
from typing import Any


def _normalize(obj: Any) -> Any:
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    return obj


def canonical_json(payload: Any) -> str:
    """
    Stable JSON text for a payload.

    Keys are sorted and separators fixed so equal payloads produce equal bytes
    across runs.
    """
    return json.dumps(_normalize(payload), sort_keys=True, separators=(",", ":"))


def plan_to_json(plan: Any) -> dict[str, Any]:
    """
    ExecutionPlan transport shape.

    We only rely on plan.steps and plan.skipped holding dataclasses.
    """
    steps = []
    for position, step in enumerate(plan.steps):
        steps.append(
            {
                "position": position,
                "kind": step.intent.kind,
                "target": step.intent.target,
                "backend": step.backend,
                "parameters": _normalize(step.resolved_parameters),
                "depends_on": list(step.depends_on),
            }
        )
    skipped = [
        {"kind": s.intent.kind, "target": s.intent.target, "reason": s.reason}
        for s in plan.skipped
    ]
    version = str(plan.schema_version) if plan.schema_version is not None else None
    return {"schema_version": version, "steps": steps, "skipped": skipped}
