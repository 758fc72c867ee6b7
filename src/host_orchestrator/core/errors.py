"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
SchemaError is a problem with the document and is never retried.
ResolutionError means the document and the available backends do not fit
together and should name what to fix.
BackendError is a backend health problem, handled by excluding the backend.
StepFailure is an apply call that reported failure and ends up in the report.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from host_orchestrator.core.types import Intent, SchemaVersion, Step


def describe_intent(intent: Intent) -> str:
    """Short human readable reference to an intent, used in error messages."""
    return f"intent #{intent.index} ({intent.kind} '{intent.target}')"


class OrchestratorError(Exception):
    """Base class for all orchestrator exceptions."""


class SchemaError(OrchestratorError):
    """Raised when a document does not satisfy the schema it declares."""


class UnknownVersion(SchemaError):
    """Raised when a document declares a schema version that was never released."""

    def __init__(self, version: SchemaVersion | str, known: Sequence[SchemaVersion] = ()) -> None:
        self.version = version
        self.known = tuple(known)
        listed = ", ".join(str(v) for v in self.known) or "none"
        super().__init__(f"unknown schema version {version}; released versions: {listed}")


class RemovedVersion(SchemaError):
    """Raised when a document declares a schema version past its removal."""

    def __init__(self, version: SchemaVersion, notice: str) -> None:
        self.version = version
        self.notice = notice
        super().__init__(f"schema version {version} has been removed: {notice}")


class ShapeError(SchemaError):
    """
    Raised when one intent fails the field rules of its kind.

    index and target are filled in when the failing intent is known, so the
    message points at the exact entry of the document.
    """

    def __init__(
        self,
        intent_kind: str,
        field: str,
        reason: str,
        index: int | None = None,
        target: str | None = None,
    ) -> None:
        self.intent_kind = intent_kind
        self.field = field
        self.reason = reason
        self.index = index
        self.target = target

        where = f"intent #{index}" if index is not None else "intent"
        if target:
            where += f" ({intent_kind} '{target}')"
        elif intent_kind:
            where += f" ({intent_kind})"
        super().__init__(f"{where}: field '{field}': {reason}")


class ResolutionError(OrchestratorError):
    """Raised when validated intents cannot be turned into an execution plan."""


class Unsatisfiable(ResolutionError):
    """Raised when no available backend can satisfy an intent."""

    def __init__(self, intent: Intent, advisory: Sequence[str] = ()) -> None:
        self.intent = intent
        self.advisory = tuple(advisory)
        message = f"{describe_intent(intent)}: no available backend supports kind '{intent.kind}'"
        if self.advisory:
            message += f" (advisory only: {', '.join(self.advisory)})"
        super().__init__(message)


class AmbiguousBackend(ResolutionError):
    """Raised when several equally ranked backends could satisfy an intent."""

    def __init__(self, intent: Intent, candidates: Sequence[str]) -> None:
        self.intent = intent
        self.candidates = tuple(candidates)
        super().__init__(
            f"{describe_intent(intent)}: backends {', '.join(self.candidates)} rank equally; "
            "add a backend hint or a backend priority"
        )


class ConflictingIntents(ResolutionError):
    """Raised when two intents contradict each other under a backend conflict rule."""

    def __init__(self, a: Intent, b: Intent, reason: str = "") -> None:
        self.a = a
        self.b = b
        self.reason = reason
        message = f"{describe_intent(a)} conflicts with {describe_intent(b)}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class OrderingCycle(ResolutionError):
    """Raised when backend ordering constraints form a cycle between kinds."""

    def __init__(self, kinds: Sequence[str]) -> None:
        self.kinds = tuple(kinds)
        super().__init__(f"ordering constraints form a cycle: {' -> '.join(self.kinds)}")


class BackendError(OrchestratorError):
    """Base class for backend health problems."""

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        self.message = message
        super().__init__(f"backend {backend}: {message}")


class HandshakeMismatch(BackendError):
    """Raised when a backend speaks an incompatible protocol version."""


class BackendTimeout(BackendError):
    """Raised when a call across the protocol boundary exceeds its timeout."""


class MalformedResponse(BackendError):
    """Raised when a backend answers with something that is not a valid response."""


class BackendCallError(BackendError):
    """Raised when a backend answers a call with a protocol level error."""

    def __init__(self, backend: str, message: str, code: str = "", details: Any = None) -> None:
        self.code = code
        self.details = details
        super().__init__(backend, message)


class StepFailure(OrchestratorError):
    """Raised from a run report for a step whose apply call failed."""

    def __init__(self, step: Step, detail: str) -> None:
        self.step = step
        self.detail = detail
        super().__init__(f"{describe_intent(step.intent)} failed on backend {step.backend}: {detail}")
