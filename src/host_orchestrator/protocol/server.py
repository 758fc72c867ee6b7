"""
Stdio protocol server.

Backends written in Python can answer the engine with a few lines:

    import sys
    from host_orchestrator.protocol.server import serve

    if __name__ == "__main__":
        sys.exit(serve(MyBackend(), sys.stdin, sys.stdout))

serve reads one request from stdin, dispatches it to the backend object and
writes exactly one response. Validation problems become a validation_error
response, anything the backend raises becomes a backend_error response with
the exception text, so the engine always receives a well formed answer.
"""

from __future__ import annotations

import json
import logging
from typing import IO, Any

from host_orchestrator.backends.base import Backend
from host_orchestrator.core.errors import BackendTimeout
from host_orchestrator.protocol.codec import (
    decode_apply_params,
    decode_request,
    encode_apply_result,
    encode_description,
    encode_handshake,
    encode_response,
    error_response,
    ok_response,
)
from host_orchestrator.protocol.errors import ErrorCode, ProtocolValidationError
from host_orchestrator.protocol.schemas import PROTOCOL_VERSION, ProtocolMethod, ProtocolResponse, is_compatible

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 300.0


def handle_request(backend: Backend, payload: Any, timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS) -> dict[str, Any]:
    """Answer one decoded JSON request. Always returns a response payload."""
    return encode_response(_answer(backend, payload, timeout_seconds))


def _answer(backend: Backend, payload: Any, timeout_seconds: float) -> ProtocolResponse:
    request_id = "unknown"
    try:
        req = decode_request(payload)
        request_id = req.request_id

        if not is_compatible(PROTOCOL_VERSION, req.protocol_version):
            return error_response(
                PROTOCOL_VERSION,
                request_id,
                ErrorCode.unsupported_protocol,
                f"backend speaks protocol {PROTOCOL_VERSION}, request uses {req.protocol_version}",
            )

        if req.method == ProtocolMethod.handshake:
            result = encode_handshake(backend.handshake(timeout_seconds))
        elif req.method == ProtocolMethod.describe:
            result = encode_description(backend.describe(timeout_seconds))
        else:
            intent_kind, target, parameters = decode_apply_params(req.params)
            result = encode_apply_result(backend.apply(intent_kind, target, parameters, timeout_seconds))

        return ok_response(PROTOCOL_VERSION, request_id, result)

    except ProtocolValidationError as exc:
        return error_response(
            PROTOCOL_VERSION, request_id, ErrorCode.validation_error, str(exc), {"field": exc.field}
        )
    except BackendTimeout as exc:
        return error_response(PROTOCOL_VERSION, request_id, ErrorCode.timeout, exc.message)
    except Exception as exc:  # noqa: BLE001 - protocol boundary, reported to the engine
        logger.exception("backend call failed")
        return error_response(
            PROTOCOL_VERSION,
            request_id,
            ErrorCode.backend_error,
            f"{type(exc).__name__}: {exc}",
        )


def serve(backend: Backend, stdin: IO[str], stdout: IO[str]) -> int:
    """
    Answer a single request read from stdin.

    Returns a process exit status: 0 when the request was understood, 2 when
    the input was not JSON.
    """
    raw = stdin.read()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        response = error_response(PROTOCOL_VERSION, "unknown", ErrorCode.validation_error, "request is not JSON")
        stdout.write(json.dumps(encode_response(response)))
        stdout.flush()
        return 2

    stdout.write(json.dumps(handle_request(backend, payload)))
    stdout.flush()
    return 0
