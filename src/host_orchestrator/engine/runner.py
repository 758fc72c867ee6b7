"""
Engine runner.

Purpose
Run one document once:
- Load configuration
- Load the document
- Discover backends
- Run the intent engine
- Write the audit trail

This is the composition layer of the system.
It wires configuration, document source, backend discovery and auditing.

Core engine remains pure.
Runner handles environment configuration.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Mapping

from host_orchestrator.backends.base import BackendSource
from host_orchestrator.backends.executable import SearchPathSource
from host_orchestrator.backends.registry import BackendRegistry
from host_orchestrator.config.loader import EngineConfig, load_config
from host_orchestrator.core.logging import configure_logging
from host_orchestrator.core.types import RunStatus
from host_orchestrator.engine.engine import EngineRunResult, IntentEngine
from host_orchestrator.engine.execution_mode import ExecutionMode
from host_orchestrator.execution.executor import CancellationToken
from host_orchestrator.intent.base import DocumentSource
from host_orchestrator.intent.file_source import DocumentLoadError, FileDocumentSource
from host_orchestrator.planner.resolver import Resolver
from host_orchestrator.report.audit import AuditLogger
from host_orchestrator.schema.builtin import default_registry
from host_orchestrator.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


class EngineRunner:
    """
    Single invocation runner.

    There is no loop and no persisted history. Running the same document
    again converges because backends are idempotent.
    """

    def __init__(
        self,
        config: EngineConfig,
        document_source: DocumentSource,
        backend_source: BackendSource | None = None,
        schemas: SchemaRegistry | None = None,
    ) -> None:
        self._config = config
        self._document_source = document_source
        self._backend_source = backend_source or SearchPathSource(
            search_path=config.backends.search_path,
            prefix=config.backends.prefix,
        )
        self._schemas = schemas or default_registry()
        self._audit = AuditLogger(config.audit_path) if config.audit_path is not None else None

    @classmethod
    def from_files(
        cls,
        document_path: str | Path,
        config_path: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> EngineRunner:
        """Build a runner from a document file and an optional TOML config, configuring logging."""
        config = load_config(config_path, environ)
        configure_logging(config.logging.level, json_lines=config.logging.json_lines)
        return cls(config, FileDocumentSource(Path(document_path)))

    def run(
        self,
        mode: ExecutionMode = ExecutionMode.apply,
        cancel: CancellationToken | None = None,
    ) -> EngineRunResult:
        """Load the document and run it once against freshly discovered backends."""
        run_id = uuid.uuid4().hex

        try:
            document = self._document_source.load()
        except DocumentLoadError as exc:
            logger.error("cannot load document: %s", exc)
            result = EngineRunResult(status=RunStatus.aborted, error=exc)
            self._audit_result(run_id, result)
            return result

        registry = BackendRegistry(self._backend_source, self._config.backends.registry)
        engine = IntentEngine(
            schemas=self._schemas,
            backends=registry,
            resolver=Resolver(self._config.resolver),
            executor_config=self._config.executor,
        )

        result = engine.run_once(document, mode=mode, cancel=cancel)
        for notice in result.notices:
            logger.warning("schema notice: %s", notice)

        self._audit_result(run_id, result)
        return result

    def _audit_result(self, run_id: str, result: EngineRunResult) -> None:
        if self._audit is None:
            return
        if result.report is not None:
            self._audit.log_report(run_id, result.report)
            return
        self._audit.log(
            {
                "event": "run",
                "run_id": run_id,
                "status": result.status,
                "error": str(result.error) if result.error is not None else None,
                "steps": len(result.plan) if result.plan is not None else 0,
            }
        )
