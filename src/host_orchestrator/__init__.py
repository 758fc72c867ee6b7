"""
host_orchestrator

This package is a declarative configuration engine for Unix hosts.
It turns a versioned, distribution agnostic description of a host into an
ordered plan of operations and runs that plan through pluggable backends.

We keep modules small and well separated:
core contains shared data structures, errors and logging setup
schema contains versioned rulesets and document validation
intent contains the validated intent set and document sources
protocol contains the capability negotiation wire shapes and codec
backends contains the backend interface, discovery and the registry
planner contains backend selection, conflicts and ordering
execution contains the plan executor and failure policies
engine composes one run from document to run report
config loads engine configuration
report contains the audit log writer
"""

__version__ = "0.3.0"
