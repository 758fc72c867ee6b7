"""
External executable backends.

Transport
One request per process invocation. The engine writes a JSON request to the
executable's stdin and reads one JSON response from stdout. The call is
bounded by subprocess timeouts.

Anything the executable prints to stderr is kept as diagnostic text.
A non zero exit status without a valid response, or output that is not a
protocol response, is a MalformedResponse. A protocol error response is a
BackendCallError. There are no retries.

SearchPathSource finds executables named <prefix><backend name> in a list of
directories, in the spirit of git subcommands.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from host_orchestrator.backends.base import BackendHandle, BackendSource
from host_orchestrator.core.errors import BackendCallError, BackendTimeout, MalformedResponse
from host_orchestrator.core.types import BackendDescription
from host_orchestrator.protocol.codec import (
    decode_apply_result,
    decode_description,
    decode_handshake,
    decode_response,
    encode_apply_params,
    encode_request,
)
from host_orchestrator.protocol.errors import ProtocolValidationError
from host_orchestrator.protocol.schemas import (
    PROTOCOL_VERSION,
    ApplyResult,
    HandshakeResult,
    ProtocolMethod,
    ProtocolRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "host-orchestrator-backend-"

_STDERR_LIMIT = 4000


@dataclass(frozen=True)
class ExecutableBackend:
    """
    Backend reached through an external executable.

    command
    Argument vector used to start the backend. Usually the executable path,
    optionally preceded by an interpreter.

    env
    Extra environment variables for the backend process.
    """

    backend_name: str
    command: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    protocol_version: str = PROTOCOL_VERSION

    @property
    def name(self) -> str:
        return self.backend_name

    def handshake(self, timeout_seconds: float) -> HandshakeResult:
        result = self._call(ProtocolMethod.handshake, {}, timeout_seconds)
        try:
            return decode_handshake(result)
        except ProtocolValidationError as exc:
            raise MalformedResponse(self.name, f"handshake: {exc}") from exc

    def describe(self, timeout_seconds: float) -> BackendDescription:
        result = self._call(ProtocolMethod.describe, {}, timeout_seconds)
        try:
            return decode_description(result)
        except ProtocolValidationError as exc:
            raise MalformedResponse(self.name, f"describe: {exc}") from exc

    def apply(
        self,
        intent_kind: str,
        target: str,
        parameters: dict[str, Any],
        timeout_seconds: float,
    ) -> ApplyResult:
        params = encode_apply_params(intent_kind, target, parameters)
        result = self._call(ProtocolMethod.apply, params, timeout_seconds)
        try:
            return decode_apply_result(result)
        except ProtocolValidationError as exc:
            raise MalformedResponse(self.name, f"apply: {exc}") from exc

    def _call(self, method: ProtocolMethod, params: dict[str, Any], timeout_seconds: float) -> dict[str, Any]:
        request_id = uuid.uuid4().hex
        req = ProtocolRequest(
            protocol_version=self.protocol_version,
            request_id=request_id,
            method=method,
            params=params,
        )
        body = json.dumps(encode_request(req))

        env = dict(os.environ)
        env.update(self.env)

        try:
            completed = subprocess.run(
                list(self.command),
                input=body,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise BackendTimeout(
                self.name, f"{method.value} timed out after {timeout_seconds:g} seconds"
            ) from exc
        except OSError as exc:
            raise MalformedResponse(self.name, f"{method.value}: cannot start backend: {exc}") from exc

        stderr = (completed.stderr or "").strip()[-_STDERR_LIMIT:]

        try:
            raw = json.loads(completed.stdout)
        except json.JSONDecodeError as exc:
            message = f"{method.value}: exit status {completed.returncode}, output is not JSON"
            if stderr:
                message += f": {stderr}"
            raise MalformedResponse(self.name, message) from exc

        try:
            resp = decode_response(raw)
        except ProtocolValidationError as exc:
            raise MalformedResponse(self.name, f"{method.value}: {exc}") from exc

        if resp.request_id != request_id:
            raise MalformedResponse(self.name, f"{method.value}: response answers another request")

        if not resp.ok:
            err = resp.error
            message = err.message if err is not None else "unknown backend error"
            code = err.code if err is not None else ""
            details = err.details if err is not None else None
            raise BackendCallError(self.name, message, code=code, details=details)

        if stderr:
            logger.debug("backend %s %s stderr: %s", self.name, method.value, stderr)
        return resp.result or {}


@dataclass(frozen=True)
class SearchPathSource(BackendSource):
    """
    Discover executables named <prefix><name> in search_path.

    Handles are returned in search path order, so the first directory that
    provides a name comes first. The registry keeps that one and records the
    later ones as shadowed, like PATH lookup.
    """

    search_path: tuple[Path, ...]
    prefix: str = DEFAULT_PREFIX
    env: dict[str, str] = field(default_factory=dict)

    def discover(self) -> list[BackendHandle]:
        handles: list[BackendHandle] = []

        for directory in self.search_path:
            directory = Path(directory)
            if not directory.is_dir():
                logger.debug("backend search path entry %s is not a directory", directory)
                continue
            for candidate in sorted(directory.iterdir()):
                if not candidate.name.startswith(self.prefix):
                    continue
                name = candidate.name[len(self.prefix) :]
                if not name or not candidate.is_file() or not os.access(candidate, os.X_OK):
                    continue
                handles.append(
                    BackendHandle(
                        name=name,
                        backend=ExecutableBackend(
                            backend_name=name,
                            command=(str(candidate),),
                            env=dict(self.env),
                        ),
                        source=str(candidate),
                    )
                )

        return handles


def search_path_from_env(value: str | None, default: Sequence[Path] = ()) -> tuple[Path, ...]:
    """Split an os.pathsep separated list, falling back to default."""
    if not value:
        return tuple(default)
    return tuple(Path(p) for p in value.split(os.pathsep) if p)
