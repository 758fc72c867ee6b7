"""
Negotiation protocol codec.

Every message is one JSON object. The envelope carries protocol_version and
request_id; a request adds method and params, a response adds ok and exactly
one of result or error. Method payloads are decoded into typed values here so
nothing past this module handles raw dictionaries from a backend.
"""

from __future__ import annotations

import re
from typing import Any

from host_orchestrator.core.types import (
    BackendDescription,
    Capability,
    ConflictRule,
    Fidelity,
    OrderingConstraint,
    StepStatus,
)
from host_orchestrator.protocol.errors import ErrorCode, ProtocolValidationError
from host_orchestrator.protocol.schemas import (
    ApplyResult,
    HandshakeResult,
    ProtocolError,
    ProtocolMethod,
    ProtocolRequest,
    ProtocolResponse,
)

_PROTOCOL_VERSION = re.compile(r"^\d+\.\d+$")


def _require_dict(value: Any, field: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolValidationError(field, "must be an object")
    return value


def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise ProtocolValidationError(field, "must be a non empty string")
    return value


def _require_bool(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise ProtocolValidationError(field, "must be a boolean")
    return value


def _require_list(value: Any, field: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolValidationError(field, "must be a list")
    return value


def _require_version(value: Any, field: str) -> str:
    version = _require_str(value, field)
    if not _PROTOCOL_VERSION.match(version):
        raise ProtocolValidationError(field, "must look like MAJOR.MINOR")
    return version


def _optional_dict(value: Any, field: str) -> dict[str, Any] | None:
    return None if value is None else _require_dict(value, field)


def _decode_envelope(payload: Any, what: str) -> tuple[dict[str, Any], str, str]:
    obj = _require_dict(payload, what)
    version = _require_version(obj.get("protocol_version"), "protocol_version")
    request_id = _require_str(obj.get("request_id"), "request_id")
    return obj, version, request_id


def decode_request(payload: Any) -> ProtocolRequest:
    obj, version, request_id = _decode_envelope(payload, "request")

    method_raw = _require_str(obj.get("method"), "method")
    if method_raw not in ProtocolMethod.__members__:
        raise ProtocolValidationError("method", f"{method_raw!r} is not one of {', '.join(ProtocolMethod)}")

    return ProtocolRequest(
        protocol_version=version,
        request_id=request_id,
        method=ProtocolMethod(method_raw),
        params=_optional_dict(obj.get("params"), "params") or {},
    )


def encode_request(req: ProtocolRequest) -> dict[str, Any]:
    return {
        "protocol_version": req.protocol_version,
        "request_id": req.request_id,
        "method": req.method.value,
        "params": req.params,
    }


def decode_response(payload: Any) -> ProtocolResponse:
    obj, version, request_id = _decode_envelope(payload, "response")
    ok = _require_bool(obj.get("ok"), "ok")
    result = obj.get("result")
    error = obj.get("error")

    if ok:
        if error is not None:
            raise ProtocolValidationError("error", "is not allowed when ok is true")
        return ProtocolResponse(version, request_id, ok=True, result=_optional_dict(result, "result") or {})

    if result is not None:
        raise ProtocolValidationError("result", "is not allowed when ok is false")
    err = _require_dict(error, "error")
    return ProtocolResponse(
        version,
        request_id,
        ok=False,
        error=ProtocolError(
            code=_require_str(err.get("code"), "error.code"),
            message=_require_str(err.get("message"), "error.message"),
            details=_optional_dict(err.get("details"), "error.details"),
        ),
    )


def ok_response(protocol_version: str, request_id: str, result: dict[str, Any]) -> ProtocolResponse:
    return ProtocolResponse(protocol_version, request_id, ok=True, result=result)


def error_response(
    protocol_version: str,
    request_id: str,
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
) -> ProtocolResponse:
    return ProtocolResponse(
        protocol_version,
        request_id,
        ok=False,
        error=ProtocolError(code=code.value, message=message, details=details),
    )


def encode_response(resp: ProtocolResponse) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "protocol_version": resp.protocol_version,
        "request_id": resp.request_id,
        "ok": resp.ok,
    }
    if resp.ok:
        payload["result"] = resp.result or {}
        return payload

    err = resp.error or ProtocolError(code=ErrorCode.backend_error.value, message="unknown error")
    payload["error"] = {"code": err.code, "message": err.message}
    if err.details is not None:
        payload["error"]["details"] = err.details
    return payload


def decode_handshake(result: Any) -> HandshakeResult:
    obj = _require_dict(result, "handshake result")
    return HandshakeResult(
        protocol_version=_require_version(obj.get("protocol_version"), "protocol_version"),
        backend_name=_require_str(obj.get("backend_name"), "backend_name"),
    )


def encode_handshake(handshake: HandshakeResult) -> dict[str, Any]:
    return {
        "protocol_version": handshake.protocol_version,
        "backend_name": handshake.backend_name,
    }


def _decode_when(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    obj = _require_dict(value, name)
    for key in obj.keys():
        _require_str(key, f"{name} key")
    return dict(obj)


def decode_description(result: Any) -> BackendDescription:
    """
    Decode a describe result.

    Unknown fidelity values or missing kinds make the whole response invalid;
    a half understood description is never used.
    """
    obj = _require_dict(result, "describe result")
    backend = _require_str(obj.get("backend"), "backend")

    capabilities: list[Capability] = []
    for idx, raw in enumerate(_require_list(obj.get("capabilities"), "capabilities")):
        item = _require_dict(raw, f"capabilities[{idx}]")
        kind = _require_str(item.get("kind"), f"capabilities[{idx}].kind")
        fidelity_raw = _require_str(item.get("fidelity"), f"capabilities[{idx}].fidelity")
        try:
            fidelity = Fidelity(fidelity_raw)
        except ValueError as exc:
            raise ProtocolValidationError(f"capabilities[{idx}].fidelity", "is not a known fidelity") from exc
        capabilities.append(Capability(intent_kind=kind, fidelity=fidelity))

    ordering: list[OrderingConstraint] = []
    for idx, raw in enumerate(_require_list(obj.get("ordering"), "ordering")):
        item = _require_dict(raw, f"ordering[{idx}]")
        ordering.append(
            OrderingConstraint(
                before=_require_str(item.get("before"), f"ordering[{idx}].before"),
                after=_require_str(item.get("after"), f"ordering[{idx}].after"),
            )
        )

    conflicts: list[ConflictRule] = []
    for idx, raw in enumerate(_require_list(obj.get("conflicts"), "conflicts")):
        item = _require_dict(raw, f"conflicts[{idx}]")
        reason = item.get("reason", "")
        if not isinstance(reason, str):
            raise ProtocolValidationError(f"conflicts[{idx}].reason", "must be a string")
        conflicts.append(
            ConflictRule(
                a_kind=_require_str(item.get("a_kind"), f"conflicts[{idx}].a_kind"),
                b_kind=_require_str(item.get("b_kind"), f"conflicts[{idx}].b_kind"),
                a_field=_require_str(item.get("a_field", "target"), f"conflicts[{idx}].a_field"),
                b_field=_require_str(item.get("b_field", "target"), f"conflicts[{idx}].b_field"),
                a_when=_decode_when(item.get("a_when"), f"conflicts[{idx}].a_when"),
                b_when=_decode_when(item.get("b_when"), f"conflicts[{idx}].b_when"),
                reason=reason,
            )
        )

    return BackendDescription(
        backend=backend,
        capabilities=tuple(capabilities),
        ordering=tuple(ordering),
        conflicts=tuple(conflicts),
    )


def encode_description(description: BackendDescription) -> dict[str, Any]:
    return {
        "backend": description.backend,
        "capabilities": [
            {"kind": c.intent_kind, "fidelity": c.fidelity.value} for c in description.capabilities
        ],
        "ordering": [{"before": o.before, "after": o.after} for o in description.ordering],
        "conflicts": [
            {
                "a_kind": r.a_kind,
                "b_kind": r.b_kind,
                "a_field": r.a_field,
                "b_field": r.b_field,
                "a_when": dict(r.a_when),
                "b_when": dict(r.b_when),
                "reason": r.reason,
            }
            for r in description.conflicts
        ],
    }


def encode_apply_params(intent_kind: str, target: str, parameters: dict[str, Any]) -> dict[str, Any]:
    return {"intent_kind": intent_kind, "target": target, "parameters": parameters}


def decode_apply_params(params: Any) -> tuple[str, str, dict[str, Any]]:
    obj = _require_dict(params, "params")
    intent_kind = _require_str(obj.get("intent_kind"), "params.intent_kind")
    target = _require_str(obj.get("target"), "params.target")
    parameters = obj.get("parameters")
    if parameters is None:
        parameters = {}
    return intent_kind, target, _require_dict(parameters, "params.parameters")


def decode_apply_result(result: Any) -> ApplyResult:
    obj = _require_dict(result, "apply result")
    status_raw = _require_str(obj.get("status"), "status")
    if status_raw not in (StepStatus.applied.value, StepStatus.failed.value):
        raise ProtocolValidationError("status", "must be applied or failed")

    detail = obj.get("detail", "")
    if detail is None:
        detail = ""
    if not isinstance(detail, str):
        raise ProtocolValidationError("detail", "must be a string")

    changed = obj.get("changed", False)
    if changed is None:
        changed = False

    return ApplyResult(
        status=StepStatus(status_raw),
        detail=detail,
        changed=_require_bool(changed, "changed"),
    )


def encode_apply_result(result: ApplyResult) -> dict[str, Any]:
    return {
        "status": result.status.value,
        "detail": result.detail,
        "changed": result.changed,
    }
