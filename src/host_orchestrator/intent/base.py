"""
Document source interfaces.

Goal
Provide pluggable document ingestion.

A document source returns the raw parsed tree
{"schema_version": ..., "intents": [...]}
which the schema registry then validates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class DocumentSource(Protocol):
    """
    Document source interface.

    load returns a mapping in the document shape.
    """

    def load(self) -> dict[str, Any]:
        """Load the raw document."""


@dataclass(frozen=True)
class InlineDocumentSource(DocumentSource):
    """Serve a document that is already parsed, for example by an embedding tool."""

    document: dict[str, Any]

    def load(self) -> dict[str, Any]:
        return dict(self.document)
