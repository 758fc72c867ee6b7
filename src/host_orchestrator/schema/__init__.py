"""
Schema package.

Versioned rulesets for intent documents and the registry that validates
documents against them.
"""

from host_orchestrator.schema.builtin import default_registry
from host_orchestrator.schema.registry import SchemaRegistry, SchemaRelease

__all__ = ["SchemaRegistry", "SchemaRelease", "default_registry"]
