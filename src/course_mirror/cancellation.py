"""Cooperative cancellation for one sync run.

A ``CancellationToken`` is created once per pipeline run and passed to the
orchestrator, worker pools and the download engine. Long loops call
``should_continue()`` between units of work; nothing is hard-killed on the
first request.
"""

from __future__ import annotations

import os
import signal
from collections.abc import Callable
from types import FrameType

import structlog

logger = structlog.get_logger()

FORCED_EXIT_CODE = 130


class CancellationToken:
    """Shared stop flag for a single run."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason
            logger.info("sync_cancel_requested", reason=reason)

    def should_continue(self) -> bool:
        return not self._cancelled


def install_signal_handlers(
    token: CancellationToken,
    *,
    force_exit: Callable[[int], object] = os._exit,
) -> Callable[[], None]:
    """Route SIGINT/SIGTERM into ``token``.

    The first signal requests a graceful stop so in-flight lessons can
    persist their state. A second signal terminates the process at once
    without cleanup.

    Returns:
        A callable that restores the previous handlers.
    """

    def _handle(signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if token.cancelled:
            logger.warning("sync_force_exit", signal=name)
            force_exit(FORCED_EXIT_CODE)
            return
        token.cancel(f"{name} received")

    previous = {
        sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return restore
