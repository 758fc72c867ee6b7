"""
Backend registry.

Purpose
Turn discovered backend handles into a capability matrix the resolver can use.

Graceful degradation
A backend that fails its handshake, times out, answers with a malformed
response, speaks an incompatible protocol major version or crashes is
excluded. The exclusion is recorded with its reason and the rest of the
backends stay usable. Nothing in here is fatal to the run.

Concurrency
Handshakes and describe calls are independent and side effect free, so they
run on a thread pool. Results are collected before the matrix is returned,
which means resolution always sees a complete, static snapshot.

Caching
Discovery and descriptions are cached for the registry lifetime, one process
run. Capabilities are assumed stable within a run.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, TypeVar

from host_orchestrator.backends.base import Backend, BackendHandle, BackendSource
from host_orchestrator.core.deadline import run_with_deadline
from host_orchestrator.core.errors import BackendError, HandshakeMismatch, MalformedResponse
from host_orchestrator.core.types import BackendDescription, CapabilityMatrix
from host_orchestrator.protocol.schemas import PROTOCOL_VERSION, is_compatible

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RegistryConfig:
    """
    Registry configuration.

    handshake_timeout_seconds and describe_timeout_seconds bound each call.

    max_workers
    Upper bound for concurrent negotiation calls.
    """

    handshake_timeout_seconds: float = 5.0
    describe_timeout_seconds: float = 5.0
    max_workers: int = 4


@dataclass(frozen=True)
class BackendExclusion:
    """
    A backend left out of resolution.

    stage is discovery, handshake or describe.
    error is the engine's classification, such as BackendTimeout.
    """

    backend: str
    stage: str
    error: str
    reason: str
    source: str = ""


class BackendRegistry:
    """
    Registry of live backends for one run.

    The matrix and the handles are read only once built. No component mutates
    them during resolution or execution.
    """

    def __init__(
        self,
        source: BackendSource,
        config: RegistryConfig | None = None,
        protocol_version: str = PROTOCOL_VERSION,
    ) -> None:
        self._source = source
        self._config = config or RegistryConfig()
        self._protocol_version = protocol_version
        self._lock = threading.Lock()
        self._discovery_lock = threading.Lock()
        self._handles: tuple[BackendHandle, ...] | None = None
        self._descriptions: dict[str, BackendDescription] = {}
        self._unavailable: set[str] = set()
        self._exclusions: list[BackendExclusion] = []

    def discover(self) -> tuple[BackendHandle, ...]:
        """
        Return handles of backends that passed the handshake.

        The first handle of a name wins; later ones are recorded as shadowed.
        Concurrent callers wait for the first discovery and share its result.
        """
        with self._discovery_lock:
            with self._lock:
                if self._handles is not None:
                    return self._handles

            live = self._discover_once()
            with self._lock:
                self._handles = live

        logger.info("discovered %d backend(s): %s", len(live), ", ".join(h.name for h in live) or "none")
        return live

    def _discover_once(self) -> tuple[BackendHandle, ...]:
        unique: list[BackendHandle] = []
        seen: dict[str, BackendHandle] = {}
        for handle in self._source.discover():
            if handle.name in seen:
                self._exclude(
                    BackendExclusion(
                        backend=handle.name,
                        stage="discovery",
                        error="Shadowed",
                        reason=f"shadowed by {seen[handle.name].source or 'an earlier backend'}",
                        source=handle.source,
                    )
                )
                continue
            seen[handle.name] = handle
            unique.append(handle)

        results = self._map(self._handshake_one, unique)
        return tuple(h for h, ok in zip(unique, results) if ok)

    def capabilities(self, handle: BackendHandle) -> BackendDescription:
        """
        Return the cached description of a backend, querying it on first use.

        Raises BackendError when the backend cannot describe itself. The
        backend is then marked unavailable for the rest of the run.
        """
        with self._lock:
            cached = self._descriptions.get(handle.name)
            if cached is not None:
                return cached
            if handle.name in self._unavailable:
                raise MalformedResponse(handle.name, "backend is unavailable for this run")

        try:
            description = run_with_deadline(
                handle.name,
                "describe",
                self._config.describe_timeout_seconds,
                handle.backend.describe,
                self._config.describe_timeout_seconds,
            )
            if not isinstance(description, BackendDescription):
                raise MalformedResponse(handle.name, "describe returned an invalid description")
            if description.backend != handle.name:
                raise MalformedResponse(
                    handle.name, f"describe reports backend {description.backend!r}"
                )
        except BackendError as exc:
            self._mark_unavailable(handle, "describe", type(exc).__name__, exc.message)
            raise
        except Exception as exc:  # noqa: BLE001 - any backend crash excludes only that backend
            self._mark_unavailable(handle, "describe", "BackendCrash", f"{type(exc).__name__}: {exc}")
            raise MalformedResponse(handle.name, f"describe crashed: {exc}") from exc

        with self._lock:
            self._descriptions[handle.name] = description
        return description

    def capability_matrix(self) -> CapabilityMatrix:
        """Describe every live backend concurrently and return the snapshot."""
        handles = self.discover()
        results = self._map(self._describe_one, list(handles))

        descriptions = {
            h.name: d for h, d in zip(handles, results) if d is not None
        }
        return CapabilityMatrix(descriptions=descriptions)

    def backends(self) -> dict[str, Backend]:
        """Available backends by name, excluding unavailable ones."""
        handles = self.discover()
        with self._lock:
            return {h.name: h.backend for h in handles if h.name not in self._unavailable}

    def handle(self, name: str) -> BackendHandle | None:
        for handle in self.discover():
            if handle.name == name:
                return handle
        return None

    def is_available(self, name: str) -> bool:
        with self._lock:
            return name not in self._unavailable and (
                self._handles is not None and any(h.name == name for h in self._handles)
            )

    @property
    def exclusions(self) -> tuple[BackendExclusion, ...]:
        with self._lock:
            return tuple(self._exclusions)

    def _handshake_one(self, handle: BackendHandle) -> bool:
        timeout = self._config.handshake_timeout_seconds
        try:
            result = run_with_deadline(handle.name, "handshake", timeout, handle.backend.handshake, timeout)
            if not is_compatible(self._protocol_version, result.protocol_version):
                raise HandshakeMismatch(
                    handle.name,
                    f"protocol {result.protocol_version} is not compatible with engine protocol "
                    f"{self._protocol_version}",
                )
            if result.backend_name != handle.name:
                raise MalformedResponse(
                    handle.name, f"handshake reports backend name {result.backend_name!r}"
                )
        except BackendError as exc:
            self._mark_unavailable(handle, "handshake", type(exc).__name__, exc.message)
            return False
        except Exception as exc:  # noqa: BLE001 - any backend crash excludes only that backend
            self._mark_unavailable(handle, "handshake", "BackendCrash", f"{type(exc).__name__}: {exc}")
            return False
        return True

    def _describe_one(self, handle: BackendHandle) -> BackendDescription | None:
        try:
            return self.capabilities(handle)
        except BackendError:
            return None

    def _map(self, func: Callable[[BackendHandle], T], handles: list[BackendHandle]) -> list[T]:
        if not handles:
            return []
        workers = max(1, min(self._config.max_workers, len(handles)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="negotiation") as pool:
            return list(pool.map(func, handles))

    def _mark_unavailable(self, handle: BackendHandle, stage: str, error: str, reason: str) -> None:
        with self._lock:
            self._unavailable.add(handle.name)
        self._exclude(
            BackendExclusion(backend=handle.name, stage=stage, error=error, reason=reason, source=handle.source)
        )

    def _exclude(self, exclusion: BackendExclusion) -> None:
        with self._lock:
            self._exclusions.append(exclusion)
        logger.warning(
            "backend %s excluded at %s: %s: %s",
            exclusion.backend,
            exclusion.stage,
            exclusion.error,
            exclusion.reason,
        )
