"""
In memory backend.

This backend is used for tests and local simulations.
It behaves like a host state database keyed by (kind, target).

Features
- Idempotent apply: when the stored state already equals the requested
  parameters the call reports applied and records no side effect
- Failure injection per target, returned as a failed apply result
- Crash injection per target, raised as an exception
- Delay injection per target, to exercise timeouts
- Handshake and describe failure injection for registry tests
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from host_orchestrator.core.errors import MalformedResponse
from host_orchestrator.core.types import (
    BackendDescription,
    Capability,
    ConflictRule,
    Fidelity,
    OrderingConstraint,
    StepStatus,
)
from host_orchestrator.protocol.schemas import PROTOCOL_VERSION, ApplyResult, HandshakeResult


@dataclass
class InMemoryBackend:
    """
    In memory backend.

    capabilities
    Mapping of intent kind to fidelity.

    failures
    Mapping of target to the diagnostic text of a failed apply.

    crashes
    Mapping of target to the message of an exception raised from apply.

    delays
    Mapping of target to seconds apply sleeps before doing anything.

    state
    (kind, target) to the parameters last applied.

    side_effects
    (kind, target) pairs in the order they were changed.
    """

    backend_name: str
    capabilities: dict[str, Fidelity] = field(default_factory=dict)
    ordering: list[tuple[str, str]] = field(default_factory=list)
    conflicts: list[ConflictRule] = field(default_factory=list)
    protocol_version: str = PROTOCOL_VERSION
    reported_name: str | None = None
    failures: dict[str, str] = field(default_factory=dict)
    crashes: dict[str, str] = field(default_factory=dict)
    delays: dict[str, float] = field(default_factory=dict)
    handshake_delay_seconds: float = 0.0
    malformed_describe: bool = False
    state: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    side_effects: list[tuple[str, str]] = field(default_factory=list)
    calls: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.backend_name

    def handshake(self, timeout_seconds: float) -> HandshakeResult:
        self._record("handshake")
        if self.handshake_delay_seconds:
            time.sleep(self.handshake_delay_seconds)
        return HandshakeResult(
            protocol_version=self.protocol_version,
            backend_name=self.reported_name or self.backend_name,
        )

    def describe(self, timeout_seconds: float) -> BackendDescription:
        self._record("describe")
        if self.malformed_describe:
            raise MalformedResponse(self.name, "describe: capabilities must be a list")
        return BackendDescription(
            backend=self.backend_name,
            capabilities=tuple(
                Capability(intent_kind=kind, fidelity=fidelity)
                for kind, fidelity in sorted(self.capabilities.items())
            ),
            ordering=tuple(OrderingConstraint(before=b, after=a) for b, a in self.ordering),
            conflicts=tuple(self.conflicts),
        )

    def apply(
        self,
        intent_kind: str,
        target: str,
        parameters: dict[str, Any],
        timeout_seconds: float,
    ) -> ApplyResult:
        self._record(f"apply {intent_kind} {target}")

        delay = self.delays.get(target, 0.0)
        if delay:
            time.sleep(delay)

        if target in self.crashes:
            raise RuntimeError(self.crashes[target])

        if target in self.failures:
            return ApplyResult(status=StepStatus.failed, detail=self.failures[target])

        key = (intent_kind, target)
        with self._lock:
            if self.state.get(key) == parameters:
                return ApplyResult(status=StepStatus.applied, detail="already in desired state", changed=False)
            self.state[key] = copy.deepcopy(parameters)
            self.side_effects.append(key)

        return ApplyResult(status=StepStatus.applied, detail=f"{intent_kind} {target} converged", changed=True)

    def _record(self, call: str) -> None:
        with self._lock:
            self.calls.append(call)
