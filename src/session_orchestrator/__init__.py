"""Durable queue, worker state machine and event log for long-running LLM sessions."""

__version__ = "0.1.0"
