"""
Schema registry.

Purpose
Hold every released schema version and validate documents against the
version they declare.

Evolution rules
Releases are published append only, in increasing version order.
A published ruleset is never changed.
Deprecation and removal are tracked on a separate timeline next to the
releases. A version can only be removed after it was deprecated and after a
newer major version exists, so users always get advance notice.

Document shape
{
  "schema_version": "1.1",
  "intents": [
    {"kind": "package", "target": "curl", "parameters": {}, "backend_hints": {}}
  ]
}

Validation is pure. The only side effect is a warning log line for documents
that use a deprecated version.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from host_orchestrator.core.errors import RemovedVersion, ShapeError, UnknownVersion
from host_orchestrator.core.types import Intent, SchemaVersion
from host_orchestrator.intent.model import ValidatedIntentSet
from host_orchestrator.schema.fields import SchemaRuleset

logger = logging.getLogger(__name__)

_DOCUMENT_KEYS = frozenset({"schema_version", "intents"})
_INTENT_KEYS = frozenset({"kind", "target", "parameters", "backend_hints"})


@dataclass(frozen=True)
class SchemaRelease:
    """One released schema version and its ruleset."""

    version: SchemaVersion
    ruleset: SchemaRuleset


@dataclass(frozen=True)
class VersionLifecycle:
    """
    Timeline entry for a version.

    deprecated_notice
    Human readable sunset notice, empty while the version is current.

    removed_notice
    Set once the version no longer validates.
    """

    deprecated_notice: str = ""
    removed_notice: str = ""

    @property
    def deprecated(self) -> bool:
        return bool(self.deprecated_notice)

    @property
    def removed(self) -> bool:
        return bool(self.removed_notice)


class SchemaRegistry:
    """Append only registry of schema releases."""

    def __init__(self) -> None:
        self._releases: dict[SchemaVersion, SchemaRelease] = {}
        self._order: list[SchemaVersion] = []
        self._timeline: dict[SchemaVersion, VersionLifecycle] = {}

    def publish(self, release: SchemaRelease) -> None:
        """
        Publish a new release.

        Versions must strictly increase. A minor bump must keep every kind and
        field of the previous release of the same major.
        """
        version = release.version
        if version in self._releases:
            raise ValueError(f"schema version {version} is already published")
        if self._order and version <= self._order[-1]:
            raise ValueError(f"schema version {version} must be newer than {self._order[-1]}")

        previous = self._latest_of_major(version.major)
        if previous is not None:
            _assert_additive(previous, release)

        self._releases[version] = release
        self._order.append(version)
        self._timeline[version] = VersionLifecycle()

    def deprecate(self, version: SchemaVersion, notice: str) -> None:
        """Attach a sunset notice to a released version."""
        self._require_released(version)
        if not notice:
            raise ValueError("deprecation notice must not be empty")
        current = self._timeline[version]
        if current.removed:
            raise ValueError(f"schema version {version} is already removed")
        self._timeline[version] = VersionLifecycle(deprecated_notice=notice)

    def remove(self, version: SchemaVersion, notice: str) -> None:
        """
        Stop accepting a version.

        Requires a prior deprecation and a newer major release.
        """
        self._require_released(version)
        current = self._timeline[version]
        if not current.deprecated:
            raise ValueError(f"schema version {version} must be deprecated before removal")
        if not any(v.major > version.major for v in self._order):
            raise ValueError(f"schema version {version} needs a newer major version before removal")
        self._timeline[version] = VersionLifecycle(
            deprecated_notice=current.deprecated_notice,
            removed_notice=notice or current.deprecated_notice,
        )

    def versions(self) -> tuple[SchemaVersion, ...]:
        """Released versions, oldest first."""
        return tuple(self._order)

    def latest(self) -> SchemaVersion:
        for version in reversed(self._order):
            if not self._timeline[version].removed:
                return version
        raise LookupError("no schema version available")

    def lifecycle(self, version: SchemaVersion) -> VersionLifecycle:
        self._require_released(version)
        return self._timeline[version]

    def ruleset(self, version: SchemaVersion) -> SchemaRuleset:
        self._require_released(version)
        return self._releases[version].ruleset

    def validate(self, document: Any, declared_version: Any = None) -> ValidatedIntentSet:
        """
        Validate a parsed document.

        declared_version overrides the schema_version key of the document.
        Raises UnknownVersion, RemovedVersion or ShapeError.
        """
        if not isinstance(document, Mapping):
            raise ShapeError("", "document", "document must be a mapping")

        extra = sorted(str(k) for k in document.keys() if k not in _DOCUMENT_KEYS)
        if extra:
            raise ShapeError("", extra[0], "unknown top level key")

        raw_version = declared_version if declared_version is not None else document.get("schema_version")
        if raw_version is None:
            raise ShapeError("", "schema_version", "missing required field")
        try:
            version = SchemaVersion.parse(raw_version)
        except ValueError as exc:
            raise ShapeError("", "schema_version", str(exc)) from exc

        if version not in self._releases:
            raise UnknownVersion(version, self._order)

        lifecycle = self._timeline[version]
        if lifecycle.removed:
            raise RemovedVersion(version, lifecycle.removed_notice)

        notices: tuple[str, ...] = ()
        if lifecycle.deprecated:
            notices = (lifecycle.deprecated_notice,)
            logger.warning("schema version %s is deprecated: %s", version, lifecycle.deprecated_notice)

        raw_intents = document.get("intents", [])
        if raw_intents is None:
            raw_intents = []
        if not isinstance(raw_intents, list):
            raise ShapeError("", "intents", "intents must be a list")

        ruleset = self._releases[version].ruleset
        intents: list[Intent] = []
        first_seen: dict[tuple[str, str], int] = {}

        for idx, raw in enumerate(raw_intents):
            intent = _validate_intent(ruleset, version, idx, raw)
            if intent.key in first_seen:
                raise ShapeError(
                    intent.kind,
                    "target",
                    f"duplicate intent, first declared as intent #{first_seen[intent.key]}",
                    index=idx,
                    target=intent.target,
                )
            first_seen[intent.key] = idx
            intents.append(intent)

        return ValidatedIntentSet(schema_version=version, intents=tuple(intents), notices=notices)

    def _latest_of_major(self, major: int) -> SchemaRelease | None:
        for version in reversed(self._order):
            if version.major == major:
                return self._releases[version]
        return None

    def _require_released(self, version: SchemaVersion) -> None:
        if version not in self._releases:
            raise UnknownVersion(version, self._order)


def _assert_additive(previous: SchemaRelease, release: SchemaRelease) -> None:
    """Every kind and field of previous must still exist, unchanged, in release."""
    for kind, old_rules in previous.ruleset.kinds.items():
        new_rules = release.ruleset.get(kind)
        if new_rules is None:
            raise ValueError(
                f"schema {release.version} drops kind {kind}; removals need a new major version"
            )
        for old_field in old_rules.fields:
            new_field = new_rules.get(old_field.name)
            if new_field != old_field:
                raise ValueError(
                    f"schema {release.version} changes {kind}.{old_field.name}; "
                    "changes need a new major version"
                )
        for new_field in new_rules.fields:
            if old_rules.get(new_field.name) is None and new_field.required:
                raise ValueError(
                    f"schema {release.version} adds required field {kind}.{new_field.name}"
                )


def _validate_intent(ruleset: SchemaRuleset, version: SchemaVersion, idx: int, raw: Any) -> Intent:
    if not isinstance(raw, Mapping):
        raise ShapeError("", "intent", "intent entry must be a mapping", index=idx)

    kind = raw.get("kind")
    target = raw.get("target")
    label = target if isinstance(target, str) else None

    if not isinstance(kind, str) or not kind:
        raise ShapeError("", "kind", "missing required field", index=idx, target=label)

    extra = sorted(str(k) for k in raw.keys() if k not in _INTENT_KEYS)
    if extra:
        raise ShapeError(kind, extra[0], "unknown intent key", index=idx, target=label)

    rules = ruleset.get(kind)
    if rules is None:
        raise ShapeError(
            kind,
            "kind",
            f"unknown intent kind for schema {version}; known: {', '.join(ruleset.kind_names())}",
            index=idx,
            target=label,
        )

    try:
        target_value = rules.validate_target(target)

        params_raw = raw.get("parameters") or {}
        if not isinstance(params_raw, Mapping):
            raise ShapeError(kind, "parameters", "parameters must be a mapping")
        parameters = rules.validate_parameters(params_raw)

        hints = _validate_hints(kind, raw.get("backend_hints"))
    except ShapeError as exc:
        raise ShapeError(exc.intent_kind, exc.field, exc.reason, index=idx, target=label) from exc

    return Intent(
        kind=kind,
        target=target_value,
        parameters=parameters,
        backend_hints=hints,
        index=idx,
    )


def _validate_hints(kind: str, raw: Any) -> dict[str, dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ShapeError(kind, "backend_hints", "backend_hints must be a mapping")

    hints: dict[str, dict[str, Any]] = {}
    for backend in sorted(raw.keys(), key=str):
        overrides = raw[backend]
        if not isinstance(backend, str) or not backend:
            raise ShapeError(kind, "backend_hints", "backend names must be non empty strings")
        if overrides is None:
            overrides = {}
        if not isinstance(overrides, Mapping):
            raise ShapeError(kind, f"backend_hints.{backend}", "overrides must be a mapping")
        for key in overrides.keys():
            if not isinstance(key, str):
                raise ShapeError(kind, f"backend_hints.{backend}", "override keys must be strings")
        hints[backend] = dict(overrides)
    return hints
