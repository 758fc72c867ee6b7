"""
Core types.

This file defines the shared data structures used across the engine.

Important design choice
We keep these types distribution neutral and transport neutral.

Distribution neutral means:
An Intent describes desired state such as "package curl present", never the
apk or pacman command that would get there.

Transport neutral means:
Backends may be external executables or in process objects, callers do not care.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from host_orchestrator.core.errors import StepFailure

_VERSION_TEXT = re.compile(r"^\s*(\d+)\.(\d+)\s*$")


class Fidelity(StrEnum):
    """
    How completely a backend can satisfy an intent kind.

    full
      The backend reaches the declared state in every respect.

    partial
      The backend reaches the state but some parameters may be ignored.

    advisory
      The backend knows the kind but cannot act on it. It is never chosen
      to execute a step.
    """

    full = "full"
    partial = "partial"
    advisory = "advisory"

    @property
    def rank(self) -> int:
        return {"full": 2, "partial": 1, "advisory": 0}[self.value]


class StepStatus(StrEnum):
    applied = "applied"
    skipped = "skipped"
    failed = "failed"


class RunStatus(StrEnum):
    """
    Overall classification of a run.

    success
      Every step applied and nothing was skipped up front.

    partial
      Some steps were skipped or failed under continue on failure.

    aborted
      The run halted on a failure, was cancelled, or never got a plan.
    """

    success = "success"
    partial = "partial"
    aborted = "aborted"


class FailurePolicy(StrEnum):
    halt_on_first_failure = "halt-on-first-failure"
    continue_on_failure = "continue-on-failure"


@dataclass(frozen=True, order=True)
class SchemaVersion:
    """A released schema version, ordered by major then minor."""

    major: int
    minor: int

    @classmethod
    def parse(cls, raw: Any) -> SchemaVersion:
        """
        Parse a version from its document forms.

        Accepted shapes
        "1.0"
        [1, 0]
        {"major": 1, "minor": 0}
        """
        if isinstance(raw, SchemaVersion):
            return raw
        if isinstance(raw, str):
            match = _VERSION_TEXT.match(raw)
            if match:
                return cls(int(match.group(1)), int(match.group(2)))
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            major, minor = raw
            if _is_plain_int(major) and _is_plain_int(minor):
                return cls(major, minor)
        if isinstance(raw, Mapping) and set(raw.keys()) == {"major", "minor"}:
            major = raw["major"]
            minor = raw["minor"]
            if _is_plain_int(major) and _is_plain_int(minor):
                return cls(major, minor)
        if isinstance(raw, float):
            # 1.10 and 1.1 are the same float, so the minor cannot be recovered.
            raise ValueError(
                f"invalid schema version {raw!r}: it was read as a number, quote it as a string"
                f" such as \"{raw}\""
            )
        raise ValueError(f"invalid schema version {raw!r}, expected 'MAJOR.MINOR'")

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


def _is_plain_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass(frozen=True)
class Intent:
    """
    A single declarative statement of desired state.

    parameters always hold the validated values with defaults filled in.
    backend_hints maps a backend name to overrides used only if that backend
    is selected.

    index is the position in the source document. It drives stable ordering.
    """

    kind: str
    target: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    backend_hints: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    index: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.kind, self.target)


@dataclass(frozen=True)
class Capability:
    """A backend's declared ability to satisfy one intent kind."""

    intent_kind: str
    fidelity: Fidelity


@dataclass(frozen=True)
class OrderingConstraint:
    """Intents of kind before must run before intents of kind after."""

    before: str
    after: str


@dataclass(frozen=True)
class ConflictRule:
    """
    A backend supplied rule describing two intents that cannot both hold.

    Two intents a and b conflict when:
    a.kind == a_kind and b.kind == b_kind
    the value of a_field on a equals the value of b_field on b,
    or the a value is a list that contains the b value
    every a_when and b_when parameter equality holds

    Fields are "target" or a parameter name.

    Example
    a user whose main group is a group that is declared absent:
    a_kind user, a_field main_group, b_kind group, b_when {"state": "absent"}
    """

    a_kind: str
    b_kind: str
    a_field: str = "target"
    b_field: str = "target"
    a_when: Dict[str, Any] = field(default_factory=dict)
    b_when: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass(frozen=True)
class BackendDescription:
    """
    Result of the describe call.

    One backend declares what it can do, in which order it needs kinds to run,
    and which intent combinations it knows to be contradictory.
    """

    backend: str
    capabilities: Tuple[Capability, ...] = ()
    ordering: Tuple[OrderingConstraint, ...] = ()
    conflicts: Tuple[ConflictRule, ...] = ()

    def capability_for(self, kind: str) -> Optional[Capability]:
        """Return the strongest capability declared for kind."""
        best: Optional[Capability] = None
        for cap in self.capabilities:
            if cap.intent_kind != kind:
                continue
            if best is None or cap.fidelity.rank > best.fidelity.rank:
                best = cap
        return best


@dataclass(frozen=True)
class CapabilityMatrix:
    """
    Read only snapshot of what every available backend can do.

    It is built once after discovery and never mutated during resolution
    or execution.
    """

    descriptions: Mapping[str, BackendDescription] = field(default_factory=dict)

    def backends(self) -> List[str]:
        """Return sorted backend names. Useful for deterministic outputs."""
        return sorted(self.descriptions.keys())

    def get(self, backend: str) -> Optional[BackendDescription]:
        return self.descriptions.get(backend)

    def candidates(self, kind: str) -> List[Tuple[str, Capability]]:
        """Backends able to act on kind, sorted by name. Advisory ones are left out."""
        out: List[Tuple[str, Capability]] = []
        for name in self.backends():
            cap = self.descriptions[name].capability_for(kind)
            if cap is not None and cap.fidelity != Fidelity.advisory:
                out.append((name, cap))
        return out

    def advisory(self, kind: str) -> List[str]:
        """Backends that only declare advisory fidelity for kind."""
        out: List[str] = []
        for name in self.backends():
            cap = self.descriptions[name].capability_for(kind)
            if cap is not None and cap.fidelity == Fidelity.advisory:
                out.append(name)
        return out

    def ordering_constraints(self) -> List[OrderingConstraint]:
        """Union of every backend's ordering constraints in deterministic order."""
        seen: Dict[Tuple[str, str], OrderingConstraint] = {}
        for name in self.backends():
            for constraint in self.descriptions[name].ordering:
                seen.setdefault((constraint.before, constraint.after), constraint)
        return [seen[k] for k in sorted(seen)]

    def conflict_rules(self) -> List[ConflictRule]:
        """Union of every backend's conflict rules, duplicates dropped."""
        rules: List[ConflictRule] = []
        for name in self.backends():
            for rule in self.descriptions[name].conflicts:
                if rule not in rules:
                    rules.append(rule)
        return rules


@dataclass(frozen=True)
class Step:
    """
    A single resolved operation.

    depends_on holds plan positions of earlier steps whose kind must run
    before this step's kind. The executor uses it to skip dependents of a
    failed step under continue on failure.
    """

    intent: Intent
    backend: str
    resolved_parameters: Dict[str, Any]
    depends_on: Tuple[int, ...] = ()


@dataclass(frozen=True)
class SkippedIntent:
    """An intent left out of the plan in best effort mode, with the reason."""

    intent: Intent
    reason: str


@dataclass(frozen=True)
class ExecutionPlan:
    """
    The ordered, resolved sequence of backend operations.

    skipped lists intents that no backend can satisfy. They are only present
    when the resolver runs in best effort mode.
    """

    steps: Tuple[Step, ...]
    skipped: Tuple[SkippedIntent, ...] = ()
    schema_version: Optional[SchemaVersion] = None

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def targets(self) -> List[Tuple[str, str]]:
        """Return (kind, target) pairs in plan order."""
        return [s.intent.key for s in self.steps]


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of one step.

    detail is the backend's own diagnostic text, verbatim.
    classification names the engine's view of a failure, for example
    StepFailure or BackendTimeout. It is empty for applied steps.
    """

    step: Step
    status: StepStatus
    detail: str = ""
    classification: str = ""


@dataclass
class RunReport:
    """
    Ordered record of one execution.

    The executor appends one outcome per plan step and closes the report when
    the run ends. A closed report rejects further outcomes.
    """

    policy: FailurePolicy = FailurePolicy.halt_on_first_failure
    unsatisfied: Tuple[SkippedIntent, ...] = ()
    cancelled: bool = False
    _outcomes: List[StepOutcome] = field(default_factory=list)
    _closed: bool = False

    def record(self, outcome: StepOutcome) -> None:
        if self._closed:
            raise RuntimeError("run report is closed")
        self._outcomes.append(outcome)

    def mark_cancelled(self) -> None:
        if self._closed:
            raise RuntimeError("run report is closed")
        self.cancelled = True

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def outcomes(self) -> Tuple[StepOutcome, ...]:
        return tuple(self._outcomes)

    def statuses(self) -> List[Tuple[str, StepStatus]]:
        """Return (target, status) pairs in plan order."""
        return [(o.step.intent.target, o.status) for o in self._outcomes]

    def count(self, status: StepStatus) -> int:
        return sum(1 for o in self._outcomes if o.status == status)

    @property
    def status(self) -> RunStatus:
        failed = self.count(StepStatus.failed)
        if self.cancelled:
            return RunStatus.aborted
        if failed and self.policy == FailurePolicy.halt_on_first_failure:
            return RunStatus.aborted
        if self.unsatisfied or failed or self.count(StepStatus.skipped):
            return RunStatus.partial
        return RunStatus.success

    def raise_for_status(self) -> None:
        """Raise StepFailure for the first failed step, if any."""
        for outcome in self._outcomes:
            if outcome.status == StepStatus.failed:
                raise StepFailure(outcome.step, outcome.detail)

    def to_dict(self) -> Dict[str, Any]:
        """Transport shape for reporting layers."""
        return {
            "status": self.status.value,
            "policy": self.policy.value,
            "cancelled": self.cancelled,
            "outcomes": [
                {
                    "kind": o.step.intent.kind,
                    "target": o.step.intent.target,
                    "backend": o.step.backend,
                    "status": o.status.value,
                    "detail": o.detail,
                    "classification": o.classification,
                }
                for o in self._outcomes
            ],
            "unsatisfied": [
                {"kind": s.intent.kind, "target": s.intent.target, "reason": s.reason}
                for s in self.unsatisfied
            ],
        }
