"""
Field rules.

A KindRules object describes the parameters one intent kind accepts.
Each FieldRule knows its type, whether it is required, its default and,
for enums, the allowed values.

Normalization rules
booleans must be real booleans, never 0 or 1
integers reject booleans
paths must be absolute
version constraints are comma separated comparators and are re-joined with
", " so equal constraints produce equal text
lists validate every item against item_type

Defaults are copied on every use so intents never share mutable values.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping

from host_orchestrator.core.errors import ShapeError

_COMPARATOR = re.compile(
    r"^(?:\*|(?:>=|<=|==|!=|>|<|=|~|\^)?\s*\d+(?:\.(?:\d+|\*)){0,2}(?:-[0-9A-Za-z.]+)?)$"
)


class FieldType(StrEnum):
    string = "string"
    boolean = "boolean"
    integer = "integer"
    enum = "enum"
    version_constraint = "version-constraint"
    path = "path"
    list = "list"
    mapping = "mapping"


def normalize_version_constraint(raw: str) -> str:
    """
    Validate and normalize a version constraint such as ">=1.2, <2".

    Raises ValueError with a readable reason.
    """
    parts = [p.strip() for p in raw.split(",")]
    if not parts or any(not p for p in parts):
        raise ValueError(f"empty comparator in version constraint {raw!r}")
    for part in parts:
        if not _COMPARATOR.match(part):
            raise ValueError(f"invalid comparator {part!r} in version constraint {raw!r}")
    return ", ".join(re.sub(r"\s+", "", p) for p in parts)


@dataclass(frozen=True)
class FieldRule:
    """
    Rule for one parameter of an intent kind.

    default is only used for optional fields. An optional field without a
    default is simply left out of the filled in parameters.
    """

    name: str
    type: FieldType
    required: bool = False
    default: Any = None
    choices: tuple[str, ...] = ()
    item_type: FieldType | None = None
    description: str = ""

    def has_default(self) -> bool:
        return not self.required and self.default is not None

    def default_value(self) -> Any:
        return copy.deepcopy(self.default)

    def normalize(self, kind: str, value: Any) -> Any:
        """Return the normalized value or raise ShapeError."""
        try:
            return _normalize_value(self.type, value, self.choices, self.item_type)
        except ValueError as exc:
            raise ShapeError(kind, self.name, str(exc)) from exc


def _normalize_value(
    ftype: FieldType,
    value: Any,
    choices: tuple[str, ...] = (),
    item_type: FieldType | None = None,
) -> Any:
    if ftype == FieldType.string:
        if not isinstance(value, str):
            raise ValueError(f"expected string, got {_type_name(value)}")
        return value

    if ftype == FieldType.boolean:
        if not isinstance(value, bool):
            raise ValueError(f"expected boolean, got {_type_name(value)}")
        return value

    if ftype == FieldType.integer:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected integer, got {_type_name(value)}")
        return value

    if ftype == FieldType.enum:
        if not isinstance(value, str):
            raise ValueError(f"expected one of [{', '.join(choices)}], got {_type_name(value)}")
        if value not in choices:
            raise ValueError(f"value {value!r} not in [{', '.join(choices)}]")
        return value

    if ftype == FieldType.version_constraint:
        if not isinstance(value, str):
            raise ValueError(f"expected version constraint string, got {_type_name(value)}")
        return normalize_version_constraint(value)

    if ftype == FieldType.path:
        if not isinstance(value, str) or not value:
            raise ValueError(f"expected path string, got {_type_name(value)}")
        if not value.startswith("/"):
            raise ValueError(f"path {value!r} must be absolute")
        return value

    if ftype == FieldType.list:
        if not isinstance(value, list):
            raise ValueError(f"expected list, got {_type_name(value)}")
        if item_type is None:
            return copy.deepcopy(value)
        out = []
        for idx, item in enumerate(value):
            try:
                out.append(_normalize_value(item_type, item, choices))
            except ValueError as exc:
                raise ValueError(f"item {idx}: {exc}") from exc
        return out

    if ftype == FieldType.mapping:
        if not isinstance(value, Mapping):
            raise ValueError(f"expected mapping, got {_type_name(value)}")
        for key in value.keys():
            if not isinstance(key, str):
                raise ValueError(f"mapping keys must be strings, got {_type_name(key)}")
        return copy.deepcopy(dict(value))

    raise ValueError(f"unsupported field type {ftype}")


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, Mapping):
        return "mapping"
    return type(value).__name__


@dataclass(frozen=True)
class KindRules:
    """
    Field rules for one intent kind.

    target_type is string or path. Path targets must be absolute, such as
    the path of a managed file or a disk mountpoint.
    """

    kind: str
    fields: tuple[FieldRule, ...] = ()
    target_type: FieldType = FieldType.string
    description: str = ""

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get(self, name: str) -> FieldRule | None:
        for rule in self.fields:
            if rule.name == name:
                return rule
        return None

    def validate_target(self, target: Any) -> str:
        if not isinstance(target, str) or not target.strip():
            raise ShapeError(self.kind, "target", "target must be a non empty string")
        if self.target_type == FieldType.path:
            return FieldRule("target", FieldType.path).normalize(self.kind, target)
        return target

    def validate_parameters(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate parameters and fill in defaults.

        The result lists keys in the order the rules declare them, which keeps
        the filled in intent identical across runs.
        """
        known = set(self.field_names())
        unknown = sorted(str(k) for k in raw.keys() if k not in known)
        if unknown:
            raise ShapeError(
                self.kind,
                unknown[0],
                f"unknown parameter; accepted: {', '.join(self.field_names()) or 'none'}",
            )

        out: dict[str, Any] = {}
        for rule in self.fields:
            if rule.name in raw and raw[rule.name] is not None:
                out[rule.name] = rule.normalize(self.kind, raw[rule.name])
            elif rule.required:
                raise ShapeError(self.kind, rule.name, "missing required field")
            elif rule.has_default():
                out[rule.name] = rule.default_value()
        return out

    def with_fields(self, added: tuple[FieldRule, ...]) -> KindRules:
        """
        Return a copy with additional fields.

        Only optional fields may be added, otherwise documents that were valid
        for the previous version would stop validating.
        """
        existing = set(self.field_names())
        for rule in added:
            if rule.name in existing:
                raise ValueError(f"kind {self.kind}: field {rule.name} already defined")
            if rule.required:
                raise ValueError(f"kind {self.kind}: added field {rule.name} must be optional")
        return KindRules(
            kind=self.kind,
            fields=self.fields + tuple(added),
            target_type=self.target_type,
            description=self.description,
        )


@dataclass(frozen=True)
class SchemaRuleset:
    """All kind rules accepted under one schema version."""

    kinds: Mapping[str, KindRules] = field(default_factory=dict)

    def get(self, kind: str) -> KindRules | None:
        return self.kinds.get(kind)

    def kind_names(self) -> list[str]:
        return sorted(self.kinds.keys())

    def extend(
        self,
        new_kinds: tuple[KindRules, ...] = (),
        new_fields: Mapping[str, tuple[FieldRule, ...]] | None = None,
    ) -> SchemaRuleset:
        """
        Derive the ruleset of a minor bump.

        Additive only: new kinds and new optional fields on existing kinds.
        """
        kinds: dict[str, KindRules] = dict(self.kinds)
        for kind_rules in new_kinds:
            if kind_rules.kind in kinds:
                raise ValueError(f"kind {kind_rules.kind} already defined")
            kinds[kind_rules.kind] = kind_rules
        for kind, added in (new_fields or {}).items():
            if kind not in kinds:
                raise ValueError(f"cannot add fields to unknown kind {kind}")
            kinds[kind] = kinds[kind].with_fields(added)
        return SchemaRuleset(kinds=kinds)
