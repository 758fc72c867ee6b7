"""
Validated intent set.

This is the in memory form of a document that passed schema validation.
It owns its intents for the lifetime of one resolution.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

from host_orchestrator.core.serialization import canonical_json
from host_orchestrator.core.types import Intent, SchemaVersion


@dataclass(frozen=True)
class ValidatedIntentSet:
    """
    Intents of one document, in document order, defaults filled in.

    notices
    Deprecation notices for the declared schema version, empty when the
    version is current.
    """

    schema_version: SchemaVersion
    intents: tuple[Intent, ...]
    notices: tuple[str, ...] = ()

    def __iter__(self) -> Iterator[Intent]:
        return iter(self.intents)

    def __len__(self) -> int:
        return len(self.intents)

    def get(self, kind: str, target: str) -> Intent | None:
        for intent in self.intents:
            if intent.kind == kind and intent.target == target:
                return intent
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": str(self.schema_version),
            "intents": [
                {
                    "kind": i.kind,
                    "target": i.target,
                    "parameters": i.parameters,
                    "backend_hints": i.backend_hints,
                }
                for i in self.intents
            ],
        }

    def canonical(self) -> str:
        """Byte stable JSON form, used to compare validation results across runs."""
        return canonical_json(self.to_dict())
