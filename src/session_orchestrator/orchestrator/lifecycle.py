"""Graceful SIGINT/SIGTERM handling for long-running loops."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class GracefulStop:
    """Stop flag set by signals; loops check it between units of work."""

    def __init__(self, *, name: str) -> None:
        self.name = name
        self.requested = False
        self.signal_name: str | None = None

    def request(self, *, signal_name: str = "manual") -> None:
        self.requested = True
        self.signal_name = signal_name

    def sleep(self, seconds: float) -> None:
        """Sleep in short slices, returning early once a stop is requested."""

        deadline = time.monotonic() + seconds
        while not self.requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("%s received %s, stopping after the current unit of work", self.name, name)
            self.request(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
