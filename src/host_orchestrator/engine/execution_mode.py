"""
Execution modes.

apply
Resolve the document and run the plan against the backends.

dry_run
Resolve the document and return the plan without calling apply on any
backend. Discovery and describe still run, they have no side effects.
"""

from __future__ import annotations

from enum import StrEnum


class ExecutionMode(StrEnum):
    apply = "apply"
    dry_run = "dry_run"
