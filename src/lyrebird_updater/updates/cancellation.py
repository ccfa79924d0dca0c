"""
Cancellation token for update operations.

The command line turns SIGINT/SIGTERM into ``token.cancel(signum)``. Every
blocking step of the engine either sleeps through ``token.sleep()`` or calls
``token.raise_if_cancelled()`` between external commands, so a termination
signal surfaces as an OperationCancelledError on the normal error path and
triggers the same rollback as any other failure.

Rollback disarms the token first: further signals are then ignored until the
rollback has finished.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

from lyrebird_updater.errors import OperationCancelledError
from lyrebird_updater.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """
    Cooperative cancellation flag shared by the engine and its collaborators.

    Attributes:
        cancelled: Whether cancellation was requested.
        signal_number: Signal that requested cancellation, if any.
        disarmed: Whether further cancellation requests are ignored.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._disarmed = False
        self._signal_number: int | None = None
        self._disarm_callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    @property
    def signal_number(self) -> int | None:
        """Signal number that requested cancellation."""
        return self._signal_number

    @property
    def disarmed(self) -> bool:
        """Whether the token ignores further cancellation requests."""
        return self._disarmed

    def cancel(self, signal_number: int | None = None) -> None:
        """
        Request cancellation.

        Args:
            signal_number: Signal that triggered the request, if any.
        """
        if self._disarmed:
            logger.warning(
                "Ignoring cancellation request during rollback",
                extra={"signal": signal_number},
            )
            return
        if not self._event.is_set():
            logger.warning(
                "Cancellation requested, rolling back at next checkpoint",
                extra={"signal": signal_number},
            )
            self._signal_number = signal_number
            self._event.set()

    def add_disarm_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback run when the token is disarmed."""
        self._disarm_callbacks.append(callback)

    def disarm(self) -> None:
        """
        Ignore further cancellation requests.

        Runs the registered callbacks once, e.g. to detach signal handlers.
        """
        if self._disarmed:
            return
        self._disarmed = True
        callbacks, self._disarm_callbacks = self._disarm_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Disarm callback failed: {e}")

    def rearm(self) -> None:
        """Accept cancellation requests again after a completed rollback."""
        self._disarmed = False

    def raise_if_cancelled(self) -> None:
        """
        Raise if cancellation was requested and the token is armed.

        Raises:
            OperationCancelledError: If cancelled.
        """
        if self._event.is_set() and not self._disarmed:
            raise OperationCancelledError(
                "Operation cancelled by signal"
                if self._signal_number is not None
                else "Operation cancelled",
                details={"signal": self._signal_number},
                signal_number=self._signal_number,
            )

    async def sleep(self, delay: float) -> None:
        """
        Sleep for up to ``delay`` seconds, waking early on cancellation.

        Raises:
            OperationCancelledError: If cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        if delay > 0 and not self._disarmed:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._event.wait(), timeout=delay)
        elif delay > 0:
            await asyncio.sleep(delay)
        self.raise_if_cancelled()
