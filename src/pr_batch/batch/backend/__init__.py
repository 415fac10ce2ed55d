"""Execution agent backends."""

from pr_batch.batch.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from pr_batch.batch.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
