"""Batch orchestrator for agent-implemented units with lineage, caching and rollback."""

__version__ = "0.1.0"
