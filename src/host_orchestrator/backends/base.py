"""
Backend interfaces.

Goal
Define the contract every backend satisfies without binding the engine to a
specific package manager or transport.

A backend is a capability tagged variant: it is chosen at resolution time by
the capabilities it declares, never by its type. The engine holds no compiled
in knowledge of apk, pacman, dpkg or homebrew.

Contract
handshake  who are you, which protocol version do you speak
describe   which intent kinds can you satisfy, with which fidelity,
           which kind ordering and conflict rules do you require
apply      bring one target to the resolved state

apply must be idempotent from the engine's point of view: when the target
already is in the requested state it reports applied without side effects.

Every call takes timeout_seconds. Implementations must return or raise
BackendTimeout within it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from host_orchestrator.core.types import BackendDescription
from host_orchestrator.protocol.schemas import ApplyResult, HandshakeResult


class Backend(Protocol):
    """Backend interface used by the registry and the executor."""

    @property
    def name(self) -> str:
        """Stable backend identifier, used in hints and priorities."""

    def handshake(self, timeout_seconds: float) -> HandshakeResult:
        """Return the protocol version and backend name."""

    def describe(self, timeout_seconds: float) -> BackendDescription:
        """Return declared capabilities, ordering constraints and conflict rules."""

    def apply(
        self,
        intent_kind: str,
        target: str,
        parameters: dict[str, Any],
        timeout_seconds: float,
    ) -> ApplyResult:
        """Bring target to the state described by parameters."""


@dataclass(frozen=True)
class BackendHandle:
    """
    A discovered backend.

    source is where it was found, such as the executable path, and is only
    used for reporting.
    """

    name: str
    backend: Backend = field(compare=False, repr=False)
    source: str = ""


class BackendSource(Protocol):
    """
    Backend discovery interface.

    discover returns handles in a deterministic order.
    """

    def discover(self) -> list[BackendHandle]:
        """Return candidate backends. Liveness is checked by the registry."""


@dataclass(frozen=True)
class StaticBackendSource(BackendSource):
    """Serve backends registered in code, for embedding tools and tests."""

    backends: tuple[Backend, ...] = ()

    def discover(self) -> list[BackendHandle]:
        return [BackendHandle(name=b.name, backend=b, source="registered") for b in self.backends]
