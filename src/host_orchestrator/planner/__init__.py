"""
Planner package.

Resolution of validated intents into an ExecutionPlan lives here, split into
backend selection, conflict detection and kind ordering.
"""

from host_orchestrator.planner.resolver import Resolver, ResolverConfig

__all__ = ["Resolver", "ResolverConfig"]
