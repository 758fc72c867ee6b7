"""
Resolver.

Purpose
Convert a validated intent set and a capability matrix into an ExecutionPlan
the executor can run without further decisions.

Why deterministic
The same intents and the same matrix always yield the same plan. Backend
choice never depends on discovery order, thread timing or dictionary order:
candidates are sorted by name, ties are broken by configuration, and anything
still tied is an error instead of a guess.

Stages
1  candidates   backends declaring the kind with fidelity above advisory
2  selection    hint, then fidelity, then configured priority
3  conflicts    backend conflict rules over the planned intents
4  ordering     backend ordering constraints over kinds, stable by document order
5  emit        steps plus intents skipped in best effort mode

Best effort only relaxes stage 1. Ambiguity, conflicts and cycles are
mistakes in the document or in the configuration and always abort.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from host_orchestrator.core.errors import (
    AmbiguousBackend,
    ConflictingIntents,
    Unsatisfiable,
    describe_intent,
)
from host_orchestrator.core.types import (
    Capability,
    CapabilityMatrix,
    ExecutionPlan,
    Intent,
    SchemaVersion,
    SkippedIntent,
    Step,
)
from host_orchestrator.intent.model import ValidatedIntentSet
from host_orchestrator.planner.conflicts import find_conflicts
from host_orchestrator.planner.ordering import KindGraph, order_intents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolverConfig:
    """
    Resolver configuration.

    best_effort
    Skip intents no backend supports instead of failing the whole resolution.
    Skipped intents are reported on the plan.

    backend_priority
    Backend names in order of preference, used when several candidates share
    the highest fidelity and no hint decides.
    """

    best_effort: bool = False
    backend_priority: tuple[str, ...] = ()


class Resolver:
    """Deterministic resolver from intents to an ExecutionPlan."""

    def __init__(self, config: ResolverConfig | None = None) -> None:
        self._config = config or ResolverConfig()

    @property
    def config(self) -> ResolverConfig:
        return self._config

    def resolve(
        self,
        intents: ValidatedIntentSet | Iterable[Intent],
        matrix: CapabilityMatrix,
    ) -> ExecutionPlan:
        """
        Build the plan.

        Raises Unsatisfiable, AmbiguousBackend, ConflictingIntents or
        OrderingCycle. Never calls a backend.
        """
        schema_version: SchemaVersion | None = None
        if isinstance(intents, ValidatedIntentSet):
            schema_version = intents.schema_version
        intent_list = list(intents)

        chosen: list[str] = []
        skipped: list[SkippedIntent] = []
        planned: list[Intent] = []

        for intent in intent_list:
            backend = self._select_backend(intent, matrix)
            if backend is None:
                reason = _unsupported_reason(intent, matrix)
                logger.warning("skipping %s: %s", describe_intent(intent), reason)
                skipped.append(SkippedIntent(intent=intent, reason=reason))
                continue
            chosen.append(backend)
            planned.append(intent)

        conflicts = find_conflicts(planned, matrix.conflict_rules())
        if conflicts:
            first = conflicts[0]
            raise ConflictingIntents(first.a, first.b, first.rule.reason)

        graph = KindGraph(matrix.ordering_constraints())
        graph.assert_acyclic()

        steps: list[Step] = []
        for pos, depends_on in order_intents(planned, graph):
            intent = planned[pos]
            backend = chosen[pos]
            steps.append(
                Step(
                    intent=intent,
                    backend=backend,
                    resolved_parameters=_resolved_parameters(intent, backend),
                    depends_on=depends_on,
                )
            )

        logger.info(
            "resolved %d intent(s) into %d step(s), %d skipped",
            len(intent_list),
            len(steps),
            len(skipped),
        )
        return ExecutionPlan(steps=tuple(steps), skipped=tuple(skipped), schema_version=schema_version)

    def _select_backend(self, intent: Intent, matrix: CapabilityMatrix) -> str | None:
        """
        Pick one backend for intent.

        Returns None only in best effort mode when nothing supports the kind.
        """
        candidates = matrix.candidates(intent.kind)
        if not candidates:
            if self._config.best_effort:
                return None
            raise Unsatisfiable(intent, matrix.advisory(intent.kind))

        pool = candidates
        hinted = [c for c in candidates if c[0] in intent.backend_hints]
        if hinted:
            pool = hinted
        elif intent.backend_hints:
            logger.debug(
                "%s: hinted backends %s are not candidates",
                describe_intent(intent),
                ", ".join(sorted(intent.backend_hints)),
            )

        if len(pool) == 1:
            return pool[0][0]

        best = _highest_fidelity(pool)
        if len(best) == 1:
            return best[0][0]

        names = [name for name, _ in best]
        for preferred in self._config.backend_priority:
            if preferred in names:
                return preferred

        raise AmbiguousBackend(intent, names)


def _highest_fidelity(pool: list[tuple[str, Capability]]) -> list[tuple[str, Capability]]:
    top = max(cap.fidelity.rank for _, cap in pool)
    return [(name, cap) for name, cap in pool if cap.fidelity.rank == top]


def _resolved_parameters(intent: Intent, backend: str) -> dict[str, Any]:
    resolved = copy.deepcopy(intent.parameters)
    resolved.update(copy.deepcopy(intent.backend_hints.get(backend, {})))
    return resolved


def _unsupported_reason(intent: Intent, matrix: CapabilityMatrix) -> str:
    advisory = matrix.advisory(intent.kind)
    reason = f"no available backend supports kind '{intent.kind}'"
    if advisory:
        reason += f" (advisory only: {', '.join(advisory)})"
    return reason
