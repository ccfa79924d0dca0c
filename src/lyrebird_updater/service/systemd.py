"""
Service-manager collaborator for the LyreBirdAudio version manager.

ServiceManagerBackend is the narrow interface the lifecycle coordinator needs:
query running/enabled state, start/stop/kill/restart, reload definitions and
read numeric properties. SystemdServiceManager implements it with systemctl.
On hosts without systemd every query degrades to "unsupported" instead of
raising, so status reports and non-service installs keep working.
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from lyrebird_updater.errors import UnavailableError
from lyrebird_updater.logging import get_logger

logger = get_logger(__name__)

SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")


class ServiceManagerBackend(ABC):
    """
    Abstract interface over the OS service manager.

    Every method takes the unit name without the ``.service`` suffix.
    Mutating methods return True on success and never raise for an ordinary
    command failure; they raise UnavailableError only when the service
    manager itself cannot be reached.
    """

    @abstractmethod
    async def is_supported(self) -> bool:
        """Whether this host has a usable service manager."""

    @abstractmethod
    async def is_active(self, service: str) -> bool:
        """Whether the service is currently active."""

    @abstractmethod
    async def is_enabled(self, service: str) -> bool:
        """Whether the service starts at boot."""

    @abstractmethod
    async def start(self, service: str, timeout: float = 30.0) -> bool:
        """Start the service."""

    @abstractmethod
    async def stop(self, service: str, timeout: float = 30.0) -> bool:
        """Ask the service to stop gracefully."""

    @abstractmethod
    async def kill(self, service: str, signal: str = "SIGKILL") -> bool:
        """Send a signal to every process of the service."""

    @abstractmethod
    async def restart(self, service: str, timeout: float = 60.0) -> bool:
        """Restart the service."""

    @abstractmethod
    async def enable(self, service: str) -> bool:
        """Enable the service at boot."""

    @abstractmethod
    async def daemon_reload(self) -> bool:
        """Reload unit definitions after a file change."""

    @abstractmethod
    async def show_property(self, service: str, name: str) -> str | None:
        """Read a unit property (e.g. NRestarts), None if unavailable."""


async def _run_systemctl(
    *args: str,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or timed out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "systemctl",
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"systemctl command timed out after {timeout}s",
            details={"args": list(args)},
        ) from exc

    return (
        proc.returncode or 0,
        stdout.decode(errors="replace") if stdout else "",
        stderr.decode(errors="replace") if stderr else "",
    )


class SystemdServiceManager(ServiceManagerBackend):
    """ServiceManagerBackend backed by systemctl."""

    def __init__(self, query_timeout: float = 10.0) -> None:
        """
        Initialize the SystemdServiceManager.

        Args:
            query_timeout: Timeout for read-only queries.
        """
        self.query_timeout = query_timeout

    async def is_supported(self) -> bool:
        """Whether systemctl exists and systemd is the running init."""
        return shutil.which("systemctl") is not None and SYSTEMD_RUNTIME_DIR.is_dir()

    async def is_active(self, service: str) -> bool:
        try:
            returncode, stdout, _ = await _run_systemctl(
                "is-active", service, timeout=self.query_timeout
            )
        except UnavailableError:
            return False
        return returncode == 0 and stdout.strip() == "active"

    async def is_enabled(self, service: str) -> bool:
        try:
            returncode, _, _ = await _run_systemctl(
                "is-enabled", service, timeout=self.query_timeout
            )
        except UnavailableError:
            return False
        return returncode == 0

    async def start(self, service: str, timeout: float = 30.0) -> bool:
        logger.info(f"Starting service: {service}")
        return await self._change("start", service, timeout=timeout)

    async def stop(self, service: str, timeout: float = 30.0) -> bool:
        logger.info(f"Stopping service: {service}")
        return await self._change("stop", service, timeout=timeout)

    async def kill(self, service: str, signal: str = "SIGKILL") -> bool:
        logger.warning(f"Sending {signal} to service: {service}")
        return await self._change(
            "kill", f"--signal={signal}", service, timeout=self.query_timeout
        )

    async def restart(self, service: str, timeout: float = 60.0) -> bool:
        logger.info(f"Restarting service: {service}")
        return await self._change("restart", service, timeout=timeout)

    async def enable(self, service: str) -> bool:
        return await self._change("enable", service, timeout=self.query_timeout)

    async def daemon_reload(self) -> bool:
        logger.info("Reloading systemd daemon")
        return await self._change("daemon-reload", timeout=30.0)

    async def show_property(self, service: str, name: str) -> str | None:
        try:
            returncode, stdout, _ = await _run_systemctl(
                "show", service, f"--property={name}", "--value",
                timeout=self.query_timeout,
            )
        except UnavailableError:
            return None
        value = stdout.strip()
        return value if returncode == 0 and value else None

    async def _change(self, *args: str, timeout: float) -> bool:
        """
        Run a mutating systemctl command.

        A command that times out counts as failed; the caller polls the real
        state afterwards.
        """
        try:
            returncode, stdout, stderr = await _run_systemctl(*args, timeout=timeout)
        except UnavailableError as e:
            if "timed out" in e.message:
                logger.warning(e.message, extra={"systemctl_args": list(args)})
                return False
            raise

        if returncode != 0:
            logger.error(
                f"systemctl {args[0]} failed: {(stderr or stdout).strip()}",
                extra={"systemctl_args": list(args), "returncode": returncode},
            )
            return False
        return True


async def get_service_status(
    manager: ServiceManagerBackend,
    service: str,
) -> dict[str, str | bool | int | None]:
    """
    Get the status of a service for operator display.

    Args:
        manager: Service manager backend.
        service: Name of the service.

    Returns:
        Dictionary with supported, active, enabled and restart_count; the
        status is "unsupported" on hosts without a service manager.
    """
    if not await manager.is_supported():
        return {
            "supported": False,
            "status": "unsupported",
            "is_active": False,
            "is_enabled": False,
            "restart_count": None,
        }

    is_active = await manager.is_active(service)
    is_enabled = await manager.is_enabled(service)
    restarts = await manager.show_property(service, "NRestarts")

    return {
        "supported": True,
        "status": "active" if is_active else "inactive",
        "is_active": is_active,
        "is_enabled": is_enabled,
        "restart_count": int(restarts) if restarts and restarts.isdigit() else None,
    }


async def wait_for_service_state(
    manager: ServiceManagerBackend,
    service: str,
    *,
    active: bool,
    timeout: float,
    poll_interval: float = 1.0,
    sleep=asyncio.sleep,
) -> bool:
    """
    Poll until the service reaches the wanted state.

    Args:
        manager: Service manager backend.
        service: Name of the service.
        active: Wanted state (True = active, False = inactive).
        timeout: Maximum time to wait.
        poll_interval: Time between status checks.
        sleep: Awaitable sleep, e.g. a cancellation token's.

    Returns:
        True if the state was reached, False on timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if await manager.is_active(service) == active:
            return True
        if loop.time() >= deadline:
            return False
        await sleep(min(poll_interval, max(deadline - loop.time(), 0)))
