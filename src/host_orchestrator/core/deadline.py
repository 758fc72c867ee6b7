"""
Bounded calls.

Every call across the protocol boundary must return within a timeout.
External executables enforce it through subprocess timeouts, but in process
backends can block forever. run_with_deadline runs the call on a daemon
thread and stops waiting once the deadline passes.

The abandoned thread keeps running until the call returns on its own.
It is a daemon so it never keeps the process alive.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from host_orchestrator.core.errors import BackendTimeout

T = TypeVar("T")


def run_with_deadline(
    backend: str,
    call_name: str,
    timeout_seconds: float,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Run func with a deadline.

    Exceptions raised by func are re-raised in the caller.
    BackendTimeout is raised when the deadline passes first.
    """
    result: dict[str, Any] = {}
    done = threading.Event()

    def _target() -> None:
        try:
            result["value"] = func(*args, **kwargs)
        except BaseException as exc:  # noqa: BLE001 - handed back to the caller thread
            result["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=_target, name=f"{backend}-{call_name}", daemon=True)
    worker.start()

    if not done.wait(timeout_seconds):
        raise BackendTimeout(backend, f"{call_name} timed out after {timeout_seconds:g} seconds")

    if "error" in result:
        raise result["error"]
    return result["value"]
