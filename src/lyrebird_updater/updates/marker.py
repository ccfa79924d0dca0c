"""
Crash-recovery marker for the LyreBirdAudio version manager.

The marker is written before the service is stopped and removed only once the
service is back (after a completed switch or a successful rollback). Finding
one at start-up means an update did not finish; the engine then completes or
rolls back that update before doing anything else.

The file is JSON, written atomically (temp file + rename) with mode 0600.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from lyrebird_updater.errors import InternalError, PermissionDeniedError
from lyrebird_updater.logging import get_logger

logger = get_logger(__name__)

MARKER_FORMAT_VERSION = 1


class BackupPaths(BaseModel):
    """Locations of the service definition backups."""

    service_file: str | None = Field(
        default=None,
        description="Backup of the installed unit file",
    )
    cron_file: str | None = Field(
        default=None,
        description="Backup of the companion schedule file",
    )


class ServiceSnapshot(BaseModel):
    """
    State of the background service captured before an update.

    Attributes:
        installed: Whether a service definition was installed.
        was_running: Whether the service was active.
        was_enabled: Whether the service was enabled at boot.
        custom_environment_lines: Operator Environment lines to carry over.
        backup_paths: Backup copies made before any mutation.
    """

    installed: bool = False
    was_running: bool = False
    was_enabled: bool = False
    custom_environment_lines: list[str] = Field(default_factory=list)
    backup_paths: BackupPaths = Field(default_factory=BackupPaths)


class UpdatePhase(str, Enum):
    """
    How far an update got before the marker was last written.

    - stashed: local edits stashed, service not yet inspected
    - prepared: service snapshot and backups taken, service about to stop
    - stopped: service stopped, checkout not yet verified
    - checked_out: workspace verified at the target
    - handoff: new updater package about to take over
    """

    STASHED = "stashed"
    PREPARED = "prepared"
    STOPPED = "stopped"
    CHECKED_OUT = "checked_out"
    HANDOFF = "handoff"


class UpdateMarker(BaseModel):
    """
    Durable record of an in-flight update.

    Holds the service snapshot plus enough workspace context to finish or
    roll back the update from a fresh process.
    """

    format_version: int = MARKER_FORMAT_VERSION
    operation: str = Field(..., description="Transaction label")
    phase: UpdatePhase = UpdatePhase.PREPARED
    target: str | None = Field(default=None, description="Raw target input")
    target_ref: str | None = Field(default=None, description="Resolved target ref")
    target_commit: str | None = Field(default=None, description="Target commit id")
    original_ref: str | None = Field(
        default=None, description="Branch checked out before the update"
    )
    original_head: str = Field(..., description="Commit checked out before the update")
    created_branch: str | None = Field(
        default=None, description="Local branch the checkout creates"
    )
    stash_commit: str | None = Field(default=None, description="Stash of local edits")
    stash_message: str | None = None
    snapshot: ServiceSnapshot = Field(default_factory=ServiceSnapshot)
    pid: int = Field(default_factory=os.getpid)
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str | None = None


class MarkerStore:
    """Reads and writes the update marker file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        """Whether a marker is present."""
        return self.path.exists()

    def save(self, marker: UpdateMarker) -> None:
        """
        Persist the marker atomically with owner-only permissions.

        Raises:
            PermissionDeniedError: If the marker directory is not writable.
            InternalError: On any other I/O failure.
        """
        marker.updated_at = datetime.now(UTC).isoformat()
        temp_file = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(marker.model_dump(mode="json"), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_file, 0o600)
            os.replace(temp_file, self.path)
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot write update marker: {self.path}",
                details={"path": str(self.path), "hint": "Run as root"},
            ) from e
        except OSError as e:
            raise InternalError(
                f"Failed to write update marker: {e}",
                details={"path": str(self.path)},
            ) from e
        finally:
            if temp_file.exists():
                temp_file.unlink(missing_ok=True)

        logger.debug(
            "Saved update marker",
            extra={"marker": str(self.path), "phase": marker.phase.value},
        )

    def load(self) -> UpdateMarker | None:
        """
        Load the marker if present.

        Raises:
            InternalError: If the marker exists but is unreadable or corrupt.
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            return UpdateMarker(**data)
        except (OSError, ValueError, ValidationError) as e:
            raise InternalError(
                f"Update marker is unreadable: {e}",
                details={
                    "path": str(self.path),
                    "hint": "Inspect the file, restore the service manually, then delete it",
                },
            ) from e

    def delete(self) -> None:
        """Remove the marker (no-op if absent)."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise InternalError(
                f"Failed to remove update marker: {e}",
                details={"path": str(self.path)},
            ) from e
        logger.debug("Removed update marker", extra={"marker": str(self.path)})
