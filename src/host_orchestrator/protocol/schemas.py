"""
Capability negotiation protocol shapes.

Every backend answers three calls:
handshake  -> {protocol_version, backend_name}
describe   -> {backend, capabilities, ordering, conflicts}
apply      -> {status, detail, changed}

A backend is compatible when its protocol major version equals the engine's.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from host_orchestrator.core.types import StepStatus

PROTOCOL_VERSION = "1.0"


class ProtocolMethod(StrEnum):
    handshake = "handshake"
    describe = "describe"
    apply = "apply"


def protocol_major(version: str) -> int:
    """Return the major component of a "MAJOR.MINOR" protocol version."""
    head = version.split(".", 1)[0]
    if not head.isdigit():
        raise ValueError(f"invalid protocol version {version!r}")
    return int(head)


def is_compatible(engine_version: str, backend_version: str) -> bool:
    """Same major version means compatible."""
    try:
        return protocol_major(engine_version) == protocol_major(backend_version)
    except ValueError:
        return False


@dataclass(frozen=True)
class ProtocolRequest:
    """
    Strict protocol request schema.

    protocol_version must be present.
    request_id must be a stable id for tracing.
    method must be one of the allowed methods.
    params is a dict with method specific schema.
    """

    protocol_version: str
    request_id: str
    method: ProtocolMethod
    params: dict[str, Any]


@dataclass(frozen=True)
class ProtocolError:
    """
    Strict error schema.

    code is a stable machine readable code.
    message is a human readable message.
    details is structured data, optional.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProtocolResponse:
    """
    Strict protocol response schema.

    ok indicates success.
    result is present only on success.
    error is present only on failure.
    """

    protocol_version: str
    request_id: str
    ok: bool
    result: dict[str, Any] | None = None
    error: ProtocolError | None = None


@dataclass(frozen=True)
class HandshakeResult:
    protocol_version: str
    backend_name: str


@dataclass(frozen=True)
class ApplyResult:
    """
    Result of an apply call.

    status is applied or failed.
    detail is the backend's diagnostic text.
    changed is False when the target already was in the requested state.
    """

    status: StepStatus
    detail: str = ""
    changed: bool = False
