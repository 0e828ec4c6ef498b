"""Built-in step function implementations."""

from session_orchestrator.orchestrator.backend.echo_step import echo_step

__all__ = ["echo_step"]
