"""Runtime configuration for the orchestration runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_STEP_FUNCTION = "session_orchestrator.orchestrator.backend.echo_step:echo_step"
DEAD_LETTER_POLICIES = ("surface", "resubmit")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class QueueSettings:
    """Task queue delivery settings."""

    queue_name: str = "orchestration"
    visibility_timeout_seconds: int = 900
    max_receive_count: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop and stepping settings."""

    worker_id: str | None = None
    step_function: str = DEFAULT_STEP_FUNCTION
    step_retry_limit: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    max_steps: int = 50
    max_context_messages: int = 40
    keep_recent_messages: int = 10
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class WatchdogSettings:
    """Watchdog sweep settings."""

    max_session_age_seconds: int = 1_800
    interval_seconds: float = 60.0
    dead_letter_policy: str = "surface"
    dead_letter_max_redrives: int = 1
    batch_size: int = 100


@dataclass(slots=True)
class NotifierSettings:
    """Status notifier settings."""

    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class DispatcherSettings:
    """Dispatcher sweep settings."""

    republish_after_seconds: int = 60
    republish_batch_size: int = 100
    poll_interval_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(".session_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to local runs."""

        return cls(
            db_path=db_path
            or Path(os.getenv("SESSION_ORCHESTRATOR_DB_PATH", ".session_orchestrator.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("SESSION_ORCHESTRATOR_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            log_level=os.getenv("SESSION_ORCHESTRATOR_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                queue_name=os.getenv("SESSION_ORCHESTRATOR_QUEUE_NAME", "orchestration"),
                visibility_timeout_seconds=int(
                    os.getenv("SESSION_ORCHESTRATOR_VISIBILITY_TIMEOUT_SECONDS", "900"),
                ),
                max_receive_count=int(os.getenv("SESSION_ORCHESTRATOR_MAX_RECEIVE_COUNT", "3")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("SESSION_ORCHESTRATOR_WORKER_ID") or None,
                step_function=os.getenv(
                    "SESSION_ORCHESTRATOR_STEP_FUNCTION",
                    DEFAULT_STEP_FUNCTION,
                ),
                step_retry_limit=int(os.getenv("SESSION_ORCHESTRATOR_STEP_RETRY_LIMIT", "3")),
                retry_base_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_RETRY_BASE_SECONDS", "1.0"),
                ),
                retry_max_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_RETRY_MAX_SECONDS", "30.0"),
                ),
                max_steps=int(os.getenv("SESSION_ORCHESTRATOR_MAX_STEPS", "50")),
                max_context_messages=int(
                    os.getenv("SESSION_ORCHESTRATOR_MAX_CONTEXT_MESSAGES", "40"),
                ),
                keep_recent_messages=int(
                    os.getenv("SESSION_ORCHESTRATOR_KEEP_RECENT_MESSAGES", "10"),
                ),
                poll_interval_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
            watchdog=WatchdogSettings(
                max_session_age_seconds=int(
                    os.getenv("SESSION_ORCHESTRATOR_MAX_SESSION_AGE_SECONDS", "1800"),
                ),
                interval_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_WATCHDOG_INTERVAL_SECONDS", "60.0"),
                ),
                dead_letter_policy=os.getenv(
                    "SESSION_ORCHESTRATOR_DEAD_LETTER_POLICY",
                    "surface",
                )
                .strip()
                .lower(),
                dead_letter_max_redrives=int(
                    os.getenv("SESSION_ORCHESTRATOR_DEAD_LETTER_MAX_REDRIVES", "1"),
                ),
                batch_size=int(os.getenv("SESSION_ORCHESTRATOR_WATCHDOG_BATCH_SIZE", "100")),
            ),
            notifier=NotifierSettings(
                poll_interval_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_NOTIFIER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
            ),
            dispatcher=DispatcherSettings(
                republish_after_seconds=int(
                    os.getenv("SESSION_ORCHESTRATOR_REPUBLISH_AFTER_SECONDS", "60"),
                ),
                republish_batch_size=int(
                    os.getenv("SESSION_ORCHESTRATOR_REPUBLISH_BATCH_SIZE", "100"),
                ),
                poll_interval_seconds=float(
                    os.getenv("SESSION_ORCHESTRATOR_DISPATCHER_POLL_INTERVAL_SECONDS", "30.0"),
                ),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SESSION_ORCHESTRATOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"SESSION_ORCHESTRATOR_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}.",
            )
        if not self.queue.queue_name.strip():
            raise ValueError("SESSION_ORCHESTRATOR_QUEUE_NAME must not be empty.")
        if self.queue.visibility_timeout_seconds <= 0:
            raise ValueError("SESSION_ORCHESTRATOR_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.queue.max_receive_count < 1:
            raise ValueError("SESSION_ORCHESTRATOR_MAX_RECEIVE_COUNT must be >= 1.")
        if ":" not in self.worker.step_function:
            raise ValueError(
                "SESSION_ORCHESTRATOR_STEP_FUNCTION must look like 'package.module:attribute'.",
            )
        if self.worker.step_retry_limit < 0:
            raise ValueError("SESSION_ORCHESTRATOR_STEP_RETRY_LIMIT must be >= 0.")
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("Worker retry delays must be >= 0.")
        if self.worker.max_steps < 1:
            raise ValueError("SESSION_ORCHESTRATOR_MAX_STEPS must be >= 1.")
        if self.worker.keep_recent_messages < 1:
            raise ValueError("SESSION_ORCHESTRATOR_KEEP_RECENT_MESSAGES must be >= 1.")
        if self.worker.max_context_messages < self.worker.keep_recent_messages + 3:
            raise ValueError(
                "SESSION_ORCHESTRATOR_MAX_CONTEXT_MESSAGES must leave room for the system "
                "message, the first user message and a summary note beyond "
                "SESSION_ORCHESTRATOR_KEEP_RECENT_MESSAGES.",
            )
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("SESSION_ORCHESTRATOR_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.watchdog.max_session_age_seconds <= 0:
            raise ValueError("SESSION_ORCHESTRATOR_MAX_SESSION_AGE_SECONDS must be > 0.")
        if self.watchdog.dead_letter_policy not in DEAD_LETTER_POLICIES:
            raise ValueError(
                "SESSION_ORCHESTRATOR_DEAD_LETTER_POLICY must be one of "
                f"{', '.join(DEAD_LETTER_POLICIES)}.",
            )
        if self.watchdog.dead_letter_max_redrives < 0:
            raise ValueError("SESSION_ORCHESTRATOR_DEAD_LETTER_MAX_REDRIVES must be >= 0.")
        if self.notifier.poll_interval_seconds <= 0:
            raise ValueError("SESSION_ORCHESTRATOR_NOTIFIER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.republish_after_seconds < 0:
            raise ValueError("SESSION_ORCHESTRATOR_REPUBLISH_AFTER_SECONDS must be >= 0.")
