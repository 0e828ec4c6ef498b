"""CLI entrypoint for session-orchestrator."""

import logging
import os
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from session_orchestrator import __version__
from session_orchestrator.config import LOG_LEVELS
from session_orchestrator.orchestrator.controllers import (
    DeadLettersCommand,
    DispatcherCommand,
    InspectSessionCommand,
    ListSessionsCommand,
    OrchestrationCliController,
    RedriveCommand,
    SubmitCommand,
    TailSessionCommand,
    WatchdogCommand,
    WorkerCommand,
)
from session_orchestrator.orchestrator.errors import OrchestrationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestrationCliController()


@click.group()
@click.version_option(version=__version__, prog_name="session-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to SESSION_ORCHESTRATOR_LOG_LEVEL or INFO.",
)
def session_orchestrator(log_level: str | None) -> None:
    """Durable orchestration of long-running LLM sessions."""

    level = (log_level or os.getenv("SESSION_ORCHESTRATOR_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@session_orchestrator.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", required=True, help="User message that starts the session.")
@click.option("--system", "system_prompt", default=None, help="Optional system message.")
@click.option(
    "--metadata",
    "metadata",
    multiple=True,
    help="Session metadata as KEY=VALUE. Can be repeated.",
)
@click.option(
    "--panel",
    "panel",
    multiple=True,
    help="Agent name for a panel discussion with the demo stepper. Can be repeated.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    system_prompt: str | None,
    metadata: tuple[str, ...],
    panel: tuple[str, ...],
) -> None:
    """Create a session and hand it to the queue."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    prompt=prompt,
                    system_prompt=system_prompt,
                    metadata=metadata,
                    panel=panel,
                ),
            ),
        )


@session_orchestrator.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one delivery or loop until idle.",
)
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for received messages in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting; 0 keeps polling forever.",
)
@click.option("--worker-id", default=None, help="Worker identity recorded on claims.")
@click.option(
    "--step-function",
    default=None,
    help="Step function as package.module:attribute.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_messages: int | None,
    max_idle_polls: int,
    worker_id: str | None,
    step_function: str | None,
) -> None:
    """Run a worker that claims and executes queued sessions."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_messages=max_messages,
                    max_idle_polls=max_idle_polls or None,
                    worker_id=worker_id,
                    step_function=step_function,
                ),
            ),
        )


@session_orchestrator.command("dispatcher")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one pending-session sweep or keep sweeping.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for sweeps in loop mode.",
)
def dispatcher(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Re-publish sessions left pending."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_dispatcher(
                DispatcherCommand(db_path=db_path, once=once, max_cycles=max_cycles),
            ),
        )


@session_orchestrator.command("watchdog")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one sweep or keep sweeping.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for sweeps in loop mode.",
)
def watchdog(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Fail overdue sessions and surface stuck sessions and dead letters."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_watchdog(
                WatchdogCommand(db_path=db_path, once=once, max_cycles=max_cycles),
            ),
        )


@session_orchestrator.command("sessions")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "queued", "running", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max sessions to print.",
)
def sessions(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent sessions."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_sessions(
                ListSessionsCommand(
                    db_path=db_path,
                    status=status.lower() if status else None,
                    limit=limit,
                ),
            ),
        )


@session_orchestrator.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
def inspect(db_path: Path | None, session_id: str) -> None:
    """Show one session with its full event trace."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.inspect_session(
                InspectSessionCommand(db_path=db_path, session_id=session_id),
            ),
        )


@session_orchestrator.command("tail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop following after this many seconds.",
)
def tail(db_path: Path | None, session_id: str, timeout_seconds: float | None) -> None:
    """Follow a session's events until it reaches a terminal status."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.tail_session(
                TailSessionCommand(
                    db_path=db_path,
                    session_id=session_id,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        )


@session_orchestrator.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=100,
    show_default=True,
    help="Max messages to print.",
)
def dead_letters(db_path: Path | None, limit: int) -> None:
    """List dead-lettered queue messages."""

    with _cli_errors():
        _emit_lines(CONTROLLER.dead_letters(DeadLettersCommand(db_path=db_path, limit=limit)))


@session_orchestrator.command("redrive")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--message-id", required=True, help="Dead-lettered message id.")
def redrive(db_path: Path | None, message_id: str) -> None:
    """Return a dead-lettered message to the queue."""

    with _cli_errors():
        _emit_lines(CONTROLLER.redrive(RedriveCommand(db_path=db_path, message_id=message_id)))


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


if __name__ == "__main__":  # pragma: no cover
    session_orchestrator()
