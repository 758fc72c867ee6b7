from __future__ import annotations

import logging
from pathlib import Path

from host_orchestrator.backends.base import StaticBackendSource
from host_orchestrator.backends.memory import InMemoryBackend
from host_orchestrator.config.loader import EngineConfig
from host_orchestrator.core.errors import Unsatisfiable
from host_orchestrator.core.logging import ROOT_LOGGER_NAME
from host_orchestrator.core.types import Fidelity, RunStatus
from host_orchestrator.engine.execution_mode import ExecutionMode
from host_orchestrator.engine.runner import EngineRunner
from host_orchestrator.intent.base import InlineDocumentSource
from host_orchestrator.intent.file_source import DocumentLoadError, FileDocumentSource
from host_orchestrator.report.audit import read_events

DOCUMENT = """
schema_version: "1.0"
intents:
  - kind: package
    target: curl
  - kind: service
    target: cron
"""


def make_backends():
    return (
        InMemoryBackend(backend_name="apk", capabilities={"package": Fidelity.full}),
        InMemoryBackend(
            backend_name="openrc",
            capabilities={"service": Fidelity.full},
            failures={"cron": "* service cron: not found"},
        ),
    )


def test_runner_writes_audit_events(tmp_path: Path):
    doc = tmp_path / "host.yaml"
    doc.write_text(DOCUMENT, encoding="utf-8")
    audit = tmp_path / "audit" / "events.jsonl"
    config = EngineConfig(audit_path=audit)

    runner = EngineRunner(config, FileDocumentSource(doc), StaticBackendSource(make_backends()))
    result = runner.run()

    assert result.status == RunStatus.aborted
    events = read_events(audit)
    assert [e["event"] for e in events] == ["step", "step", "run"]
    assert events[1]["status"] == "failed"
    assert events[1]["detail"] == "* service cron: not found"
    assert events[2]["status"] == "aborted"
    assert len({e["run_id"] for e in events}) == 1
    assert all("ts_unix" in e for e in events)


def test_each_run_discovers_backends_again(tmp_path: Path):
    doc = tmp_path / "host.yaml"
    doc.write_text('schema_version: "1.0"\nintents: [{kind: package, target: curl}]\n', encoding="utf-8")
    apk = InMemoryBackend(backend_name="apk", capabilities={"package": Fidelity.full})
    runner = EngineRunner(EngineConfig(), FileDocumentSource(doc), StaticBackendSource((apk,)))

    first = runner.run()
    second = runner.run()

    assert first.status == second.status == RunStatus.success
    assert apk.calls.count("handshake") == 2
    assert apk.side_effects == [("package", "curl")]


def test_unreadable_document_is_an_aborted_result(tmp_path: Path):
    audit = tmp_path / "events.jsonl"
    runner = EngineRunner(
        EngineConfig(audit_path=audit),
        FileDocumentSource(tmp_path / "missing.yaml"),
        StaticBackendSource(make_backends()),
    )

    result = runner.run()

    assert result.status == RunStatus.aborted
    assert isinstance(result.error, DocumentLoadError)
    (event,) = read_events(audit)
    assert event["status"] == "aborted"
    assert "missing.yaml" in event["error"]


def test_from_files_uses_configured_search_path(tmp_path: Path):
    doc = tmp_path / "host.yaml"
    doc.write_text(DOCUMENT, encoding="utf-8")
    (tmp_path / "backends").mkdir()
    config = tmp_path / "engine.toml"
    config.write_text(
        '[backends]\nsearch_path = ["backends"]\n\n[logging]\nlevel = "DEBUG"\n',
        encoding="utf-8",
    )

    runner = EngineRunner.from_files(doc, config, environ={})
    result = runner.run(mode=ExecutionMode.dry_run)

    assert result.status == RunStatus.aborted
    assert isinstance(result.error, Unsatisfiable)
    assert result.error.intent.target == "curl"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    assert logger.level == logging.DEBUG
    for handler in [h for h in logger.handlers if getattr(h, "_host_orchestrator", False)]:
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def test_dry_run_of_an_inline_document_applies_nothing(tmp_path: Path):
    audit = tmp_path / "events.jsonl"
    backends = make_backends()
    document = {
        "schema_version": "1.0",
        "intents": [{"kind": "package", "target": "curl"}, {"kind": "service", "target": "cron"}],
    }
    runner = EngineRunner(
        EngineConfig(audit_path=audit),
        InlineDocumentSource(document),
        StaticBackendSource(backends),
    )

    result = runner.run(mode=ExecutionMode.dry_run)

    assert result.status is None
    assert result.report is None
    assert [s.intent.target for s in result.plan] == ["curl", "cron"]
    assert all(b.side_effects == [] for b in backends)
    (event,) = read_events(audit)
    assert event["status"] is None
    assert event["steps"] == 2
