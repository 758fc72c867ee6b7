from __future__ import annotations

import io
import json

import pytest

from host_orchestrator.backends.memory import InMemoryBackend
from host_orchestrator.core.types import ConflictRule, Fidelity, StepStatus
from host_orchestrator.protocol.codec import (
    decode_apply_result,
    decode_description,
    decode_request,
    decode_response,
    encode_description,
)
from host_orchestrator.protocol.errors import ProtocolValidationError
from host_orchestrator.protocol.schemas import PROTOCOL_VERSION, ProtocolMethod, is_compatible
from host_orchestrator.protocol.server import handle_request, serve


def make_request(method: str, params: dict | None = None, version: str = PROTOCOL_VERSION) -> dict:
    return {"protocol_version": version, "request_id": "r1", "method": method, "params": params or {}}


def test_compatibility_is_same_major():
    assert is_compatible("1.0", "1.7")
    assert not is_compatible("1.0", "2.0")
    assert not is_compatible("1.0", "garbage")


def test_decode_request_rejects_unknown_method_and_bad_version():
    with pytest.raises(ProtocolValidationError):
        decode_request(make_request("reboot"))
    with pytest.raises(ProtocolValidationError):
        decode_request(make_request("describe", version="one"))

    req = decode_request(make_request("describe"))
    assert req.method == ProtocolMethod.describe


def test_response_must_not_mix_result_and_error():
    with pytest.raises(ProtocolValidationError):
        decode_response(
            {
                "protocol_version": "1.0",
                "request_id": "r1",
                "ok": True,
                "result": {},
                "error": {"code": "x", "message": "y"},
            }
        )


def test_description_decodes_what_it_encodes():
    backend = InMemoryBackend(
        backend_name="apk",
        capabilities={"package": Fidelity.full, "user": Fidelity.advisory},
        ordering=[("repository-source", "package")],
        conflicts=[ConflictRule(a_kind="user", b_kind="group", a_field="main_group", b_when={"state": "absent"})],
    )
    description = backend.describe(1.0)

    assert decode_description(encode_description(description)) == description


def test_description_with_unknown_fidelity_names_the_field():
    with pytest.raises(ProtocolValidationError) as info:
        decode_description({"backend": "apk", "capabilities": [{"kind": "package", "fidelity": "most"}]})

    assert info.value.field == "capabilities[0].fidelity"
    assert str(info.value) == "capabilities[0].fidelity is not a known fidelity"


def test_apply_result_status_is_restricted():
    with pytest.raises(ProtocolValidationError):
        decode_apply_result({"status": "skipped"})

    result = decode_apply_result({"status": "failed", "detail": "E: unable to locate package"})
    assert result.status == StepStatus.failed
    assert result.detail == "E: unable to locate package"
    assert result.changed is False


def test_handle_request_dispatches_to_backend():
    backend = InMemoryBackend(backend_name="apk", capabilities={"package": Fidelity.full})

    handshake = handle_request(backend, make_request("handshake"))
    assert handshake["ok"] is True
    assert handshake["result"] == {"protocol_version": PROTOCOL_VERSION, "backend_name": "apk"}

    applied = handle_request(
        backend,
        make_request("apply", {"intent_kind": "package", "target": "curl", "parameters": {"state": "present"}}),
    )
    assert applied["ok"] is True
    assert applied["result"]["status"] == "applied"
    assert backend.state[("package", "curl")] == {"state": "present"}


def test_handle_request_reports_errors_as_responses():
    backend = InMemoryBackend(backend_name="apk", crashes={"curl": "disk full"})

    invalid = handle_request(backend, {"protocol_version": "1.0"})
    assert invalid["ok"] is False
    assert invalid["error"]["code"] == "validation_error"
    assert invalid["error"]["details"] == {"field": "request_id"}

    wrong_major = handle_request(backend, make_request("handshake", version="2.0"))
    assert wrong_major["error"]["code"] == "unsupported_protocol"

    crashed = handle_request(
        backend,
        make_request("apply", {"intent_kind": "package", "target": "curl", "parameters": {}}),
    )
    assert crashed["error"]["code"] == "backend_error"
    assert "disk full" in crashed["error"]["message"]


def test_serve_answers_one_request():
    backend = InMemoryBackend(backend_name="pacman", capabilities={"package": Fidelity.partial})
    stdin = io.StringIO(json.dumps(make_request("describe")))
    stdout = io.StringIO()

    assert serve(backend, stdin, stdout) == 0

    response = json.loads(stdout.getvalue())
    assert response["request_id"] == "r1"
    assert response["result"]["capabilities"] == [{"kind": "package", "fidelity": "partial"}]


def test_serve_rejects_non_json():
    stdout = io.StringIO()

    assert serve(InMemoryBackend(backend_name="apk"), io.StringIO("{not json"), stdout) == 2
    assert json.loads(stdout.getvalue())["error"]["code"] == "validation_error"
