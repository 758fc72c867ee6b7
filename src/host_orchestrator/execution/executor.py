"""
Plan executor.

Goal
Run an ExecutionPlan against backends, one step at a time in plan order, and
record what happened in a RunReport.

Design notes
Steps never run concurrently. Host configuration operations are stateful and
the plan order is the only ordering guarantee backends get.

Every apply call is bounded by step_timeout_seconds. The deadline is enforced
here, so an in process backend that hangs cannot stall the run.

Failures are recorded, not raised. The diagnostic text of the backend goes
into the report verbatim, next to a classification:

StepFailure         the backend reported the step as failed
BackendTimeout      the call did not return in time
BackendCallError    the backend answered with a protocol error or garbage
BackendCrash        the backend raised an unexpected exception
BackendUnavailable  the planned backend is not available to this executor

Nothing is retried. Backends are idempotent, so the caller can simply run
the same document again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Mapping

from host_orchestrator.backends.base import Backend
from host_orchestrator.core.deadline import run_with_deadline
from host_orchestrator.core.errors import BackendError, BackendTimeout, describe_intent
from host_orchestrator.core.types import (
    ExecutionPlan,
    FailurePolicy,
    RunReport,
    Step,
    StepOutcome,
    StepStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Executor configuration.

    policy
    halt-on-first-failure skips everything after the first failed step.
    continue-on-failure keeps going and only skips steps that depend on a
    failed or skipped step.

    step_timeout_seconds
    Upper bound for one apply call.
    """

    policy: FailurePolicy = FailurePolicy.halt_on_first_failure
    step_timeout_seconds: float = 300.0


class CancellationToken:
    """
    Cooperative cancellation flag.

    The executor checks it between steps. A step already running is allowed
    to finish.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class PlanExecutor:
    """Sequential executor producing a RunReport."""

    def __init__(self, backends: Mapping[str, Backend], config: ExecutorConfig | None = None) -> None:
        self._backends = dict(backends)
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def execute(self, plan: ExecutionPlan, cancel: CancellationToken | None = None) -> RunReport:
        """
        Run every step of plan and return the closed report.

        The report holds exactly one outcome per step, in plan order.
        """
        policy = self._config.policy
        report = RunReport(policy=policy, unsatisfied=plan.skipped)

        halted_by: int | None = None
        blocked: set[int] = set()

        for position, step in enumerate(plan.steps):
            if cancel is not None and cancel.cancelled and not report.cancelled:
                logger.warning("run cancelled before step %d", position)
                report.mark_cancelled()

            if report.cancelled:
                report.record(_skipped(step, "run cancelled"))
                continue

            if halted_by is not None:
                report.record(_skipped(step, f"not attempted after step {halted_by} failed"))
                continue

            blocking = [d for d in step.depends_on if d in blocked]
            if blocking:
                blocked.add(position)
                first = plan.steps[blocking[0]]
                report.record(
                    _skipped(step, f"depends on step {blocking[0]} ({first.intent.kind} '{first.intent.target}')")
                )
                continue

            outcome = self._run_step(step)
            report.record(outcome)

            if outcome.status == StepStatus.failed:
                blocked.add(position)
                if policy == FailurePolicy.halt_on_first_failure:
                    halted_by = position

        report.close()
        logger.info(
            "run finished: %s, %d applied, %d failed, %d skipped",
            report.status.value,
            report.count(StepStatus.applied),
            report.count(StepStatus.failed),
            report.count(StepStatus.skipped),
        )
        return report

    def _run_step(self, step: Step) -> StepOutcome:
        intent = step.intent
        backend = self._backends.get(step.backend)
        if backend is None:
            detail = f"backend {step.backend} is not available"
            logger.error("%s: %s", describe_intent(intent), detail)
            return StepOutcome(step=step, status=StepStatus.failed, detail=detail, classification="BackendUnavailable")

        timeout = self._config.step_timeout_seconds
        try:
            result = run_with_deadline(
                step.backend,
                "apply",
                timeout,
                backend.apply,
                intent.kind,
                intent.target,
                dict(step.resolved_parameters),
                timeout,
            )
        except BackendTimeout as exc:
            return self._failed(step, exc.message, "BackendTimeout")
        except BackendError as exc:
            return self._failed(step, exc.message, "BackendCallError")
        except Exception as exc:  # noqa: BLE001 - a crashing backend fails only its step
            return self._failed(step, f"{type(exc).__name__}: {exc}", "BackendCrash")

        if result.status == StepStatus.failed:
            return self._failed(step, result.detail, "StepFailure")

        logger.info(
            "%s applied by %s%s",
            describe_intent(intent),
            step.backend,
            "" if result.changed else " (no change)",
        )
        return StepOutcome(step=step, status=StepStatus.applied, detail=result.detail)

    def _failed(self, step: Step, detail: str, classification: str) -> StepOutcome:
        logger.error(
            "%s failed on %s: %s: %s",
            describe_intent(step.intent),
            step.backend,
            classification,
            detail,
        )
        return StepOutcome(step=step, status=StepStatus.failed, detail=detail, classification=classification)


def _skipped(step: Step, detail: str) -> StepOutcome:
    return StepOutcome(step=step, status=StepStatus.skipped, detail=detail)
