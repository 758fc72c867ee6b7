"""
Intent engine.

This engine coordinates:
schema validation, capability negotiation, resolution and execution of one
document.

Determinism and safety
Validation and resolution are pure and deterministic.
Only the executor touches the host, and only in apply mode.
Document and resolution problems never reach a backend: they end the run as
aborted with the error attached, before any apply call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from host_orchestrator.backends.registry import BackendExclusion, BackendRegistry
from host_orchestrator.core.errors import OrchestratorError, ResolutionError, SchemaError
from host_orchestrator.core.serialization import plan_to_json
from host_orchestrator.core.types import ExecutionPlan, RunReport, RunStatus
from host_orchestrator.engine.execution_mode import ExecutionMode
from host_orchestrator.execution.executor import CancellationToken, ExecutorConfig, PlanExecutor
from host_orchestrator.planner.resolver import Resolver
from host_orchestrator.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineRunResult:
    """
    Outcome of one engine run.

    status
    None for a dry run that produced a plan, otherwise the run status.
    Validation and resolution errors give aborted with error set.

    plan
    The resolved plan, when resolution succeeded.

    report
    The closed run report, only in apply mode.

    exclusions
    Backends left out during discovery or negotiation.

    notices
    Deprecation notices of the declared schema version.
    """

    status: RunStatus | None
    plan: ExecutionPlan | None = None
    report: RunReport | None = None
    error: OrchestratorError | None = None
    exclusions: tuple[BackendExclusion, ...] = ()
    notices: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return self.status in (None, RunStatus.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value if self.status is not None else None,
            "error": str(self.error) if self.error is not None else None,
            "error_type": type(self.error).__name__ if self.error is not None else None,
            "plan": plan_to_json(self.plan) if self.plan is not None else None,
            "report": self.report.to_dict() if self.report is not None else None,
            "exclusions": [
                {"backend": e.backend, "stage": e.stage, "error": e.error, "reason": e.reason}
                for e in self.exclusions
            ],
            "notices": list(self.notices),
        }


class IntentEngine:
    """
    Intent engine.

    schemas
    Registry of released schema versions.

    backends
    Backend registry for this run. Its cache lives as long as the engine
    run, so a fresh registry is expected per invocation.

    resolver
    Deterministic resolver.

    executor_config
    Failure policy and step timeout.
    """

    def __init__(
        self,
        schemas: SchemaRegistry,
        backends: BackendRegistry,
        resolver: Resolver | None = None,
        executor_config: ExecutorConfig | None = None,
    ) -> None:
        self._schemas = schemas
        self._backends = backends
        self._resolver = resolver or Resolver()
        self._executor_config = executor_config or ExecutorConfig()

    def run_once(
        self,
        document: Mapping[str, Any],
        mode: ExecutionMode = ExecutionMode.apply,
        cancel: CancellationToken | None = None,
    ) -> EngineRunResult:
        """
        Run one document.

        Steps
        1) validate against the declared schema version
        2) negotiate capabilities with the available backends
        3) resolve into a plan
        4) execute, unless dry run
        """
        try:
            validated = self._schemas.validate(document)
        except SchemaError as exc:
            logger.error("document rejected: %s", exc)
            return EngineRunResult(status=RunStatus.aborted, error=exc)

        matrix = self._backends.capability_matrix()
        exclusions = self._backends.exclusions

        try:
            plan = self._resolver.resolve(validated, matrix)
        except ResolutionError as exc:
            logger.error("resolution failed: %s", exc)
            return EngineRunResult(
                status=RunStatus.aborted,
                error=exc,
                exclusions=exclusions,
                notices=validated.notices,
            )

        if mode == ExecutionMode.dry_run:
            logger.info("dry run, %d step(s) planned and not applied", len(plan))
            return EngineRunResult(
                status=None,
                plan=plan,
                exclusions=exclusions,
                notices=validated.notices,
            )

        executor = PlanExecutor(self._backends.backends(), self._executor_config)
        report = executor.execute(plan, cancel)

        return EngineRunResult(
            status=report.status,
            plan=plan,
            report=report,
            exclusions=self._backends.exclusions,
            notices=validated.notices,
        )
