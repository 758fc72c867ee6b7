"""
Protocol errors.

Error codes travel in the error object of a response. Backends written in
other languages must use the same strings.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Codes a backend may put in error.code."""

    validation_error = "validation_error"
    unsupported_protocol = "unsupported_protocol"
    timeout = "timeout"
    backend_error = "backend_error"


class ProtocolValidationError(Exception):
    """
    A request or response does not match the negotiation protocol.

    field is the dotted path of the offending value, such as
    capabilities[2].fidelity, or empty when the whole payload is wrong.
    The text is safe to send back to the peer.
    """

    def __init__(self, field: str, problem: str) -> None:
        self.field = field
        self.problem = problem
        super().__init__(f"{field} {problem}" if field else problem)
