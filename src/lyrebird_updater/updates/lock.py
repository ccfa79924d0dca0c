"""
Directory-based update lock.

The lock is a directory created with a single atomic mkdir(); the holder
writes its PID into ``<lock>/pid``. A waiter that finds the lock inspects the
recorded holder and reclaims the lock when:

- the PID is not alive, or
- the PID is alive but its command line is not this program (the PID was
  recycled by an unrelated process), or
- no PID was recorded and the directory is older than the grace period
  (the holder died between mkdir and writing its PID).

Reclaiming renames the stale directory to a unique tombstone first. Only the
waiter whose rename succeeds goes on, and it deletes the tombstone only if it
is still the directory that was judged stale; a lock recreated in between by
another waiter is renamed back untouched.

Lock handles do not survive process replacement: a re-executed updater must
acquire the lock again, and the stale-PID rules above make that possible.
"""

from __future__ import annotations

import os
import shutil
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from lyrebird_updater.errors import LockedError, PermissionDeniedError
from lyrebird_updater.logging import get_logger
from lyrebird_updater.process_utils import is_process_alive, process_matches_program
from lyrebird_updater.updates.cancellation import CancellationToken

logger = get_logger(__name__)

PID_FILE_NAME = "pid"


@dataclass(frozen=True)
class _LockIdentity:
    """What a waiter saw when it judged a lock directory."""

    inode: int
    device: int
    pid: int | None


def _identity_of(path: Path) -> _LockIdentity | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    try:
        pid: int | None = int((path / PID_FILE_NAME).read_text().strip())
    except (OSError, ValueError):
        pid = None
    return _LockIdentity(inode=st.st_ino, device=st.st_dev, pid=pid)


@dataclass(frozen=True)
class LockHandle:
    """Proof of lock ownership returned by UpdateLock.acquire()."""

    path: Path
    holder_pid: int
    acquisition_time: datetime = field(default_factory=lambda: datetime.now(UTC))


class UpdateLock:
    """
    Mutual exclusion between update attempts on one installation.

    Attributes:
        path: Lock directory.
        program_name: Name a live holder's command line must contain.
        poll_interval: Delay between acquisition attempts.
        stale_grace: Age after which a PID-less lock directory is stale.
    """

    def __init__(
        self,
        path: Path | str,
        program_name: str = "lyrebird-updater",
        *,
        poll_interval: float = 1.0,
        stale_grace: float = 10.0,
        token: CancellationToken | None = None,
    ) -> None:
        self.path = Path(path)
        self.program_name = program_name
        self.poll_interval = poll_interval
        self.stale_grace = stale_grace
        self._token = token or CancellationToken()

    @property
    def pid_file(self) -> Path:
        """File holding the holder's PID."""
        return self.path / PID_FILE_NAME

    def holder_pid(self) -> int | None:
        """Return the recorded holder PID, or None if absent or unreadable."""
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def is_stale(self) -> bool:
        """
        Whether an existing lock may be reclaimed.

        Returns:
            True if the holder is dead, is an unrelated process, or never
            recorded its PID within the grace period.
        """
        pid = self.holder_pid()
        if pid is None:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > self.stale_grace

        if not is_process_alive(pid):
            logger.info("Lock holder is no longer running", extra={"holder_pid": pid})
            return True

        if not process_matches_program(pid, self.program_name):
            logger.warning(
                "Lock holder PID was reused by another program",
                extra={"holder_pid": pid, "program": self.program_name},
            )
            return True

        return False

    def try_acquire(self) -> LockHandle | None:
        """
        Make one acquisition attempt, reclaiming a stale lock if found.

        Returns:
            A LockHandle on success, None if a live holder owns the lock.

        Raises:
            PermissionDeniedError: If the lock directory cannot be created.
        """
        for _ in range(2):
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                os.mkdir(self.path, 0o755)
            except FileExistsError:
                observed = _identity_of(self.path)
                if observed is None:
                    continue
                if not self.is_stale():
                    return None
                if not self._reclaim(observed):
                    return None
                continue
            except PermissionError as e:
                raise PermissionDeniedError(
                    f"Cannot create lock directory: {self.path}",
                    details={"path": str(self.path), "hint": "Run as root (sudo)"},
                ) from e

            pid = os.getpid()
            try:
                self.pid_file.write_text(f"{pid}\n")
            except OSError:
                shutil.rmtree(self.path, ignore_errors=True)
                raise
            logger.debug("Lock acquired", extra={"lock": str(self.path), "pid": pid})
            return LockHandle(path=self.path, holder_pid=pid)

        return None

    async def acquire(self, timeout: float = 30.0) -> LockHandle:
        """
        Acquire the lock, polling until ``timeout`` elapses.

        Args:
            timeout: Maximum wait in seconds.

        Returns:
            LockHandle for release().

        Raises:
            LockedError: On timeout, with the holder PID in the details.
            PermissionDeniedError: If the lock cannot be created.
            OperationCancelledError: If cancelled while waiting.
        """
        deadline = time.monotonic() + timeout
        announced = False

        while True:
            handle = self.try_acquire()
            if handle is not None:
                return handle

            holder = self.holder_pid()
            if not announced:
                logger.info(
                    "Another update is in progress, waiting for the lock",
                    extra={"holder_pid": holder, "timeout": timeout},
                )
                announced = True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockedError(
                    f"Another update is in progress (PID {holder})",
                    details={
                        "holder_pid": holder,
                        "lock": str(self.path),
                        "hint": (
                            f"Wait for PID {holder} to finish; if it is hung, stop it "
                            f"and remove {self.path}"
                        ),
                    },
                )
            await self._token.sleep(min(self.poll_interval, remaining))

    def release(self, handle: LockHandle) -> bool:
        """
        Release the lock if this process still owns it.

        A process whose lock was reclaimed (or that was never the holder) must
        not delete a lock now owned by someone else.

        Returns:
            True if the lock directory was removed.
        """
        pid = os.getpid()
        if handle.holder_pid != pid or self.holder_pid() != pid:
            logger.warning(
                "Not releasing a lock this process does not own",
                extra={"lock": str(self.path), "holder_pid": self.holder_pid()},
            )
            return False

        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug("Lock released", extra={"lock": str(self.path)})
        return True

    @asynccontextmanager
    async def held(self, timeout: float = 30.0) -> AsyncIterator[LockHandle]:
        """Hold the lock for the duration of an ``async with`` block."""
        handle = await self.acquire(timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def _reclaim(self, observed: _LockIdentity) -> bool:
        """
        Move a stale lock out of the way.

        Returns:
            True if the path is free for a new mkdir(), False if another
            waiter now owns the lock.
        """
        tombstone = self.path.with_name(
            f".{self.path.name}.stale-{os.getpid()}-{time.monotonic_ns()}"
        )
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            # Another waiter moved it first; race for the mkdir
            return True

        if _identity_of(tombstone) != observed:
            logger.warning(
                "Update lock was replaced while reclaiming it, leaving it in place",
                extra={"lock": str(self.path), "holder_pid": observed.pid},
            )
            try:
                os.rename(tombstone, self.path)
            except OSError as e:
                logger.error(
                    f"Could not put back the update lock: {e}",
                    extra={"lock": str(self.path), "tombstone": str(tombstone)},
                )
            return False

        logger.warning(
            "Removing stale update lock",
            extra={"lock": str(self.path), "holder_pid": observed.pid},
        )
        shutil.rmtree(tombstone, ignore_errors=True)
        return True
