"""
File document source.

Reads a YAML or JSON document from disk. JSON is a subset of YAML, so both go
through yaml.safe_load.

Composition
A document may extend other documents. Included intents come first, in the
order the extends entries are listed, followed by the document's own intents.

Schema example
schema_version: "1.1"
extends:
  - path: base.yaml
    omit: ["service:sshd"]
  - path: desktop.yaml
    pick: ["package:firefox", "package:foot"]
intents:
  - kind: package
    target: curl

pick and omit take "kind:target" keys. Paths are relative to the including
file. Every included document must declare the same schema version as the
including one. Overriding an included intent is done by omitting it and
declaring it again, never by silent shadowing: duplicates still fail
validation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from host_orchestrator.core.errors import OrchestratorError
from host_orchestrator.core.types import SchemaVersion
from host_orchestrator.intent.base import DocumentSource

logger = logging.getLogger(__name__)

_EXTENDS_KEYS = frozenset({"path", "pick", "omit"})


class DocumentLoadError(OrchestratorError):
    """Raised when a document file cannot be read, parsed or composed."""


def read_document(path: Path) -> dict[str, Any]:
    """Parse one file without resolving extends."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise DocumentLoadError(f"failed to read document {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DocumentLoadError(f"invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise DocumentLoadError(f"document {path} must be a mapping at the top level")
    return payload


def intent_key(entry: Any) -> str:
    """Return the "kind:target" key of a raw intent entry, empty when malformed."""
    if not isinstance(entry, Mapping):
        return ""
    return f"{entry.get('kind', '')}:{entry.get('target', '')}"


def _string_list(value: Any, name: str, path: Path) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DocumentLoadError(f"{path}: extends.{name} must be a list of 'kind:target' strings")
    return list(value)


def _declared_version(payload: Mapping[str, Any], path: Path) -> SchemaVersion | None:
    raw = payload.get("schema_version")
    if raw is None:
        return None
    try:
        return SchemaVersion.parse(raw)
    except ValueError as exc:
        raise DocumentLoadError(f"{path}: {exc}") from exc


def _compose(path: Path, stack: tuple[Path, ...]) -> dict[str, Any]:
    resolved = path.resolve()
    if resolved in stack:
        chain = " -> ".join(str(p) for p in stack + (resolved,))
        raise DocumentLoadError(f"extends cycle: {chain}")

    payload = read_document(resolved)
    version = _declared_version(payload, resolved)
    raw_extends = payload.pop("extends", None) or []
    if not isinstance(raw_extends, list):
        raise DocumentLoadError(f"{resolved}: extends must be a list")

    own = payload.get("intents") or []
    if not isinstance(own, list):
        # Left to schema validation, which reports it with the proper error type.
        return payload

    included: list[Any] = []
    for idx, entry in enumerate(raw_extends):
        if isinstance(entry, str):
            entry = {"path": entry}
        if not isinstance(entry, Mapping) or "path" not in entry:
            raise DocumentLoadError(f"{resolved}: extends item {idx} needs a path")
        extra = sorted(str(k) for k in entry.keys() if k not in _EXTENDS_KEYS)
        if extra:
            raise DocumentLoadError(f"{resolved}: extends item {idx} has unknown key {extra[0]}")

        pick = _string_list(entry.get("pick"), "pick", resolved)
        omit = _string_list(entry.get("omit"), "omit", resolved) or []

        child_path = resolved.parent / str(entry["path"])
        child = _compose(child_path, stack + (resolved,))

        child_version = _declared_version(child, child_path)
        if version is not None and child_version is not None and child_version != version:
            raise DocumentLoadError(
                f"{resolved}: extends {child_path} declares schema {child_version}, expected {version}"
            )

        child_intents = child.get("intents") or []
        if not isinstance(child_intents, list):
            raise DocumentLoadError(f"{child_path}: intents must be a list")

        for raw in child_intents:
            key = intent_key(raw)
            if pick is not None and key not in pick:
                continue
            if key in omit:
                continue
            included.append(raw)
        logger.debug("included %s into %s", child_path, resolved)

    payload["intents"] = included + list(own)
    return payload


@dataclass(frozen=True)
class FileDocumentSource(DocumentSource):
    """Load a document from a local YAML or JSON file, resolving extends."""

    path: Path

    def load(self) -> dict[str, Any]:
        return _compose(Path(self.path), ())
