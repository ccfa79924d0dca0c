"""
Background service lifecycle around a version switch.

The coordinator walks the stream service through

    absent → detected → stopped → reinstalled → restored

with rolled_back as the failure exit from any state but absent. prepare()
covers detection, backup, marker creation and stop; complete() covers
reinstallation, restart, marker removal and backup cleanup; rollback() puts
the backed-up definition back and restarts the service if it was running.

A host without a service manager, or without the service installed, stays in
the absent state and every step is a no-op.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path

from lyrebird_updater.config import ServiceConfig
from lyrebird_updater.errors import (
    InternalError,
    InvalidArgumentError,
    PermissionDeniedError,
    ReinstallFailedError,
    ServiceStartFailedError,
    ServiceStopFailedError,
    UpdaterError,
)
from lyrebird_updater.logging import get_logger
from lyrebird_updater.service.systemd import ServiceManagerBackend, wait_for_service_state
from lyrebird_updater.service.unit_file import (
    GENERATOR_ENVIRONMENT_DEFAULTS,
    extract_custom_environment,
    splice_custom_environment,
)
from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.marker import (
    BackupPaths,
    MarkerStore,
    ServiceSnapshot,
    UpdateMarker,
    UpdatePhase,
)

logger = get_logger(__name__)


class ServiceLifecycleState(str, Enum):
    """
    States of the service during an update.

    State transitions:
    - absent → detected (installed service found)
    - detected → stopped (service stopped, or was not running)
    - stopped → reinstalled (definition regenerated, customisations spliced)
    - reinstalled → restored (service running again, or left stopped)
    - any state but absent → rolled_back (definition restored from backup)
    """

    ABSENT = "absent"
    DETECTED = "detected"
    STOPPED = "stopped"
    REINSTALLED = "reinstalled"
    RESTORED = "restored"
    ROLLED_BACK = "rolled_back"


_VALID_TRANSITIONS: dict[ServiceLifecycleState, set[ServiceLifecycleState]] = {
    ServiceLifecycleState.ABSENT: {ServiceLifecycleState.DETECTED},
    ServiceLifecycleState.DETECTED: {
        ServiceLifecycleState.STOPPED,
        ServiceLifecycleState.ROLLED_BACK,
    },
    ServiceLifecycleState.STOPPED: {
        ServiceLifecycleState.REINSTALLED,
        ServiceLifecycleState.ROLLED_BACK,
    },
    ServiceLifecycleState.REINSTALLED: {
        ServiceLifecycleState.RESTORED,
        ServiceLifecycleState.ROLLED_BACK,
    },
    ServiceLifecycleState.RESTORED: {ServiceLifecycleState.ROLLED_BACK},
    ServiceLifecycleState.ROLLED_BACK: set(),
}


class ServiceLifecycleCoordinator:
    """
    Stops, reinstalls and restarts the stream service around a checkout.

    Attributes:
        manager: Service-manager backend.
        service: Unit name without suffix.
        unit_path: Installed service definition.
        cron_path: Companion monitoring schedule file.
        backup_dir: Directory for timestamped backups.
        marker_store: Crash-recovery marker.
    """

    def __init__(
        self,
        manager: ServiceManagerBackend,
        marker_store: MarkerStore,
        *,
        service: str = "mediamtx-audio",
        unit_path: Path | str = "/etc/systemd/system/mediamtx-audio.service",
        cron_path: Path | str | None = "/etc/cron.d/mediamtx-monitor",
        backup_dir: Path | str = "/var/backups/lyrebird-updater",
        generator: str = "mediamtx-stream-manager.sh",
        generator_args: list[str] | None = None,
        generator_timeout: float = 120.0,
        stop_timeout: float = 30.0,
        kill_timeout: float = 10.0,
        start_timeout: float = 30.0,
        poll_interval: float = 1.0,
        environment_defaults: Mapping[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.manager = manager
        self.marker_store = marker_store
        self.service = service
        self.unit_path = Path(unit_path)
        self.cron_path = Path(cron_path) if cron_path else None
        self.backup_dir = Path(backup_dir)
        self.generator = generator
        self.generator_args = list(generator_args if generator_args is not None else ["install"])
        self.generator_timeout = generator_timeout
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.environment_defaults = dict(
            environment_defaults
            if environment_defaults is not None
            else GENERATOR_ENVIRONMENT_DEFAULTS
        )
        self._token = token or CancellationToken()
        self._state = ServiceLifecycleState.ABSENT
        self._snapshot: ServiceSnapshot | None = None

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        manager: ServiceManagerBackend,
        marker_store: MarkerStore,
        token: CancellationToken | None = None,
    ) -> ServiceLifecycleCoordinator:
        """Build a coordinator from the ``service`` configuration section."""
        return cls(
            manager,
            marker_store,
            service=config.name,
            unit_path=config.unit_path,
            cron_path=config.cron_path or None,
            backup_dir=config.backup_dir,
            generator=config.generator,
            generator_args=config.generator_args,
            generator_timeout=config.generator_timeout_seconds,
            stop_timeout=config.stop_timeout_seconds,
            kill_timeout=config.kill_timeout_seconds,
            start_timeout=config.start_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
            environment_defaults=config.environment_defaults,
            token=token,
        )

    @property
    def state(self) -> ServiceLifecycleState:
        """Current lifecycle state."""
        return self._state

    def _transition_to(self, new_state: ServiceLifecycleState) -> None:
        """
        Move to ``new_state``.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._state
        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid service transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": [
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ],
                },
            )
        logger.info(
            f"Service state: {current.value} -> {new_state.value}",
            extra={"service": self.service, "old_state": current.value, "new_state": new_state.value},
        )
        self._state = new_state

    def adopt(self, snapshot: ServiceSnapshot) -> None:
        """
        Continue a lifecycle recorded by another process.

        The service of an interrupted update is treated as stopped.
        """
        self._state = (
            ServiceLifecycleState.STOPPED
            if snapshot.installed
            else ServiceLifecycleState.ABSENT
        )

    # -------------------------------------------------------------------------
    # Lifecycle steps
    # -------------------------------------------------------------------------

    async def detect(self) -> ServiceSnapshot:
        """
        Capture the service state without changing anything.

        Returns:
            ServiceSnapshot; ``installed`` is False when the host has no
            service manager or the definition file does not exist.
        """
        self._state = ServiceLifecycleState.ABSENT

        if not await self.manager.is_supported():
            logger.info(
                "No service manager on this host, skipping service handling",
                extra={"service": self.service},
            )
            return ServiceSnapshot()

        if not self.unit_path.is_file():
            logger.info(
                f"Service {self.service} is not installed",
                extra={"service": self.service, "unit": str(self.unit_path)},
            )
            return ServiceSnapshot()

        try:
            unit_text = self.unit_path.read_text()
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot read service definition: {self.unit_path}",
                details={"path": str(self.unit_path), "hint": "Run as root (sudo)"},
            ) from e

        snapshot = ServiceSnapshot(
            installed=True,
            was_running=await self.manager.is_active(self.service),
            was_enabled=await self.manager.is_enabled(self.service),
            custom_environment_lines=extract_custom_environment(
                unit_text, self.environment_defaults
            ),
        )
        self._transition_to(ServiceLifecycleState.DETECTED)
        logger.info(
            f"Detected service {self.service}",
            extra={
                "service": self.service,
                "was_running": snapshot.was_running,
                "was_enabled": snapshot.was_enabled,
                "custom_lines": len(snapshot.custom_environment_lines),
            },
        )
        return snapshot

    async def backup(self, snapshot: ServiceSnapshot) -> ServiceSnapshot:
        """
        Copy the service definition (and schedule file) to unique backups.

        Raises:
            PermissionDeniedError: If the backup directory is not writable.
            InternalError: On any other I/O failure.
        """
        if not snapshot.installed:
            return snapshot

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            service_backup = self._copy_to_backup(self.unit_path)
            cron_backup = None
            if self.cron_path is not None and self.cron_path.is_file():
                cron_backup = self._copy_to_backup(self.cron_path)
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot back up the service definition: {e}",
                details={"backup_dir": str(self.backup_dir), "hint": "Run as root (sudo)"},
            ) from e
        except OSError as e:
            raise InternalError(
                f"Failed to back up the service definition: {e}",
                details={"backup_dir": str(self.backup_dir)},
            ) from e

        snapshot.backup_paths = BackupPaths(
            service_file=str(service_backup),
            cron_file=str(cron_backup) if cron_backup else None,
        )
        logger.info(
            "Service definition backed up",
            extra={"service": self.service, "backup": str(service_backup)},
        )
        return snapshot

    async def stop(self, snapshot: ServiceSnapshot) -> None:
        """
        Stop the service, escalating to SIGKILL if it does not exit.

        Raises:
            ServiceStopFailedError: If the service is still active after the
                forced termination.
        """
        if not snapshot.installed:
            return

        if not await self.manager.is_active(self.service):
            self._transition_to(ServiceLifecycleState.STOPPED)
            return

        await self.manager.stop(self.service, timeout=self.stop_timeout)
        if await self._wait_for(active=False, timeout=self.stop_timeout):
            self._transition_to(ServiceLifecycleState.STOPPED)
            return

        logger.warning(
            f"Service {self.service} did not stop within {self.stop_timeout}s, forcing",
            extra={"service": self.service},
        )
        await self.manager.kill(self.service, "SIGKILL")
        if await self._wait_for(active=False, timeout=self.kill_timeout):
            self._transition_to(ServiceLifecycleState.STOPPED)
            return

        raise ServiceStopFailedError(
            f"Service {self.service} is still running after forced termination",
            details={
                "service": self.service,
                "hint": f"Check: systemctl status {self.service}",
            },
        )

    async def reinstall(self, source: Path | str) -> None:
        """
        Regenerate the service definition and re-apply the customisations.

        Args:
            source: Workspace containing the generator script.

        Raises:
            ReinstallFailedError: If the generator fails or leaves no unit.
        """
        source = Path(source)
        snapshot = self._current_snapshot()
        generator = source / self.generator
        if not generator.is_file():
            raise ReinstallFailedError(
                f"Service generator not found: {generator}",
                details={"generator": str(generator)},
            )

        logger.info(
            "Reinstalling service definition",
            extra={"service": self.service, "generator": str(generator)},
        )
        returncode, output = await self._run_generator(generator, source)
        if returncode != 0:
            raise ReinstallFailedError(
                f"Service generator exited with status {returncode}",
                details={"generator": str(generator), "output": output[-2000:]},
            )

        try:
            generated = self.unit_path.read_text()
        except OSError as e:
            raise ReinstallFailedError(
                f"Generator did not produce {self.unit_path}: {e}",
                details={"generator": str(generator)},
            ) from e

        spliced = splice_custom_environment(generated, snapshot.custom_environment_lines)
        if spliced != generated:
            try:
                _atomic_write(self.unit_path, spliced)
            except OSError as e:
                raise ReinstallFailedError(
                    f"Cannot write customised service definition: {e}",
                    details={"path": str(self.unit_path)},
                ) from e
            logger.info(
                "Custom environment restored",
                extra={
                    "service": self.service,
                    "lines": snapshot.custom_environment_lines,
                },
            )

        await self.manager.daemon_reload()
        if snapshot.was_enabled and not await self.manager.is_enabled(self.service):
            if not await self.manager.enable(self.service):
                raise ReinstallFailedError(
                    f"Could not re-enable {self.service}",
                    details={"service": self.service},
                )
        self._transition_to(ServiceLifecycleState.REINSTALLED)

    async def start(self, snapshot: ServiceSnapshot) -> None:
        """
        Start the service if it was running before the update.

        Raises:
            ServiceStartFailedError: If it does not become active in time.
        """
        if not snapshot.installed:
            return

        if not snapshot.was_running:
            logger.info(
                f"Service {self.service} was not running before the update, leaving it stopped",
                extra={"service": self.service},
            )
            self._transition_to(ServiceLifecycleState.RESTORED)
            return

        await self.manager.start(self.service, timeout=self.start_timeout)
        if not await self._wait_for(active=True, timeout=self.start_timeout):
            raise ServiceStartFailedError(
                f"Service {self.service} did not become active within {self.start_timeout}s",
                details={
                    "service": self.service,
                    "hint": (
                        f"Check logs: journalctl -u {self.service} -n 50; "
                        f"status: systemctl status {self.service}"
                    ),
                },
            )
        self._transition_to(ServiceLifecycleState.RESTORED)
        logger.info(f"Service {self.service} is running", extra={"service": self.service})

    async def restore_from_backup(self, snapshot: ServiceSnapshot) -> None:
        """
        Copy the backups over the live files and reload definitions.

        Raises:
            InternalError: If a backup is missing or cannot be copied.
        """
        if not snapshot.installed:
            return

        pairs = [(snapshot.backup_paths.service_file, self.unit_path)]
        if snapshot.backup_paths.cron_file and self.cron_path is not None:
            pairs.append((snapshot.backup_paths.cron_file, self.cron_path))

        for backup, live in pairs:
            if not backup or not Path(backup).is_file():
                raise InternalError(
                    f"Backup missing for {live}",
                    details={"backup": backup, "path": str(live)},
                )
            try:
                shutil.copy2(backup, live)
            except OSError as e:
                raise InternalError(
                    f"Cannot restore {live} from backup: {e}",
                    details={"backup": backup, "path": str(live)},
                ) from e

        await self.manager.daemon_reload()
        logger.info(
            "Service definition restored from backup",
            extra={"service": self.service, "backup": snapshot.backup_paths.service_file},
        )

    def cleanup_backup(self, snapshot: ServiceSnapshot) -> None:
        """Delete the backups of a finished update."""
        for backup in (snapshot.backup_paths.service_file, snapshot.backup_paths.cron_file):
            if backup:
                try:
                    Path(backup).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Could not remove backup {backup}: {e}")

    # -------------------------------------------------------------------------
    # Composite steps used by the engine
    # -------------------------------------------------------------------------

    async def prepare(self, marker: UpdateMarker) -> ServiceSnapshot:
        """
        Detect, back up, persist the marker, then stop the service.

        The marker is on disk before the service is touched, so a crash from
        here on is recoverable.
        """
        snapshot = await self.detect()
        await self.backup(snapshot)
        self._snapshot = snapshot

        marker.snapshot = snapshot
        marker.phase = UpdatePhase.PREPARED
        self.marker_store.save(marker)

        await self.stop(snapshot)
        marker.phase = UpdatePhase.STOPPED
        self.marker_store.save(marker)
        return snapshot

    async def complete(self, snapshot: ServiceSnapshot, source: Path | str) -> None:
        """
        Reinstall and restart the service, then drop the marker and backups.

        On failure the definition is restored from backup and the service is
        restarted on a best-effort basis; the error is re-raised either way.
        Dropping the marker is the point of no return, so a cancellation
        received up to then is raised here and the caller rolls back.
        """
        self._snapshot = snapshot
        if snapshot.installed:
            if self._state is ServiceLifecycleState.ABSENT:
                self.adopt(snapshot)
            try:
                await self.reinstall(source)
                await self.start(snapshot)
            except UpdaterError as e:
                logger.error(
                    f"Service update failed: {e.message}",
                    extra={"service": self.service, "error_code": e.error_code},
                )
                await self._restore_and_restart(snapshot)
                raise

        self._token.raise_if_cancelled()
        self.marker_store.delete()
        self.cleanup_backup(snapshot)

    async def rollback(self, snapshot: ServiceSnapshot) -> bool:
        """
        Restore the pre-update service definition and running state.

        Returns:
            True if the service is back as it was.
        """
        if not snapshot.installed:
            return True
        if self._state is ServiceLifecycleState.ABSENT:
            self.adopt(snapshot)

        restored = await self._restore_and_restart(snapshot)
        if self._state is not ServiceLifecycleState.ROLLED_BACK:
            self._transition_to(ServiceLifecycleState.ROLLED_BACK)
        if restored:
            self.cleanup_backup(snapshot)
        return restored

    async def _restore_and_restart(self, snapshot: ServiceSnapshot) -> bool:
        restored = True
        try:
            await self.restore_from_backup(snapshot)
        except UpdaterError as e:
            logger.error(
                f"Service restore failed: {e.message}",
                extra={"service": self.service, "error_code": e.error_code},
            )
            restored = False

        if snapshot.was_running:
            await self.manager.restart(self.service, timeout=self.start_timeout)
            if not await self._wait_for(active=True, timeout=self.start_timeout):
                logger.error(
                    f"Service {self.service} did not come back after restore",
                    extra={"service": self.service},
                )
                restored = False
        return restored

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _current_snapshot(self) -> ServiceSnapshot:
        if self._snapshot is None:
            raise InternalError("Service snapshot not captured")
        return self._snapshot

    async def _wait_for(self, *, active: bool, timeout: float) -> bool:
        return await wait_for_service_state(
            self.manager,
            self.service,
            active=active,
            timeout=timeout,
            poll_interval=self.poll_interval,
            sleep=self._token.sleep,
        )

    def _copy_to_backup(self, live: Path) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        base = self.backup_dir / f"{live.name}.{stamp}.{os.getpid()}"
        candidate = base.with_name(f"{base.name}.bak")
        counter = 1
        while candidate.exists():
            candidate = base.with_name(f"{base.name}.{counter}.bak")
            counter += 1
        shutil.copy2(live, candidate)
        return candidate

    async def _run_generator(self, generator: Path, source: Path) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "bash",
                str(generator),
                *self.generator_args,
                cwd=str(source),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise ReinstallFailedError(
                "bash not available to run the service generator",
                details={"generator": str(generator)},
            ) from e

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.generator_timeout
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ReinstallFailedError(
                f"Service generator timed out after {self.generator_timeout}s",
                details={"generator": str(generator)},
            ) from e

        return proc.returncode or 0, stdout.decode(errors="replace") if stdout else ""


def _atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content``, keeping its permissions."""
    temp_file = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        mode = 0o644
    try:
        with open(temp_file, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_file, mode)
        os.replace(temp_file, path)
    finally:
        temp_file.unlink(missing_ok=True)
