"""
Self-update safety protocol.

The updater ships inside the workspace it manages, as the Python package
``src/lyrebird_updater``. When a switch changes that package, the running
process must not keep executing stale code against the new workspace. The
guard:

1. detects the change by diffing the package path between the old and new
   revisions;
2. validates the new package: every module must compile, and
   ``python -m lyrebird_updater --version`` from the new tree must exit 0;
3. describes the handoff: the same interpreter running the new package's
   ``resume`` command, with the stash reference (or "none"), the forwarded
   command line options and the state paths of this process.

The engine only returns a Handoff. Replacing the process image happens in the
command line entry point, through execute_handoff().
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from lyrebird_updater.errors import (
    ArtifactValidationFailedError,
    ProcessReplacementFailedError,
)
from lyrebird_updater.git import GitRepository, StashEntry
from lyrebird_updater.logging import ROOT_LOGGER_NAME, get_logger

logger = get_logger(__name__)

NO_STASH = "none"
RESUME_COMMAND = "resume"
DEFAULT_ARTIFACT = "src/lyrebird_updater"


@dataclass(frozen=True)
class Handoff:
    """
    Instruction to replace the running process with the new updater.

    Attributes:
        artifact: Path of the validated package.
        argv: Full argument vector, interpreter first.
        env: Complete environment of the new process.
        stash_commit: Stash carried to the new process, if any.
    """

    artifact: Path
    argv: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    stash_commit: str | None = None


class SelfUpdateGuard:
    """
    Detects, validates and hands off to a changed updater package.

    Attributes:
        git: Repository collaborator.
        artifact: Workspace-relative path of the updater package.
        validation_timeout: Timeout of the start-up check.
        forwarded_args: Global options repeated on the resumed command line.
        pinned_env: Environment entries that keep the resumed process on the
            same repository, lock and marker.
    """

    def __init__(
        self,
        git: GitRepository,
        artifact: str = DEFAULT_ARTIFACT,
        *,
        validation_timeout: float = 30.0,
        forwarded_args: list[str] | None = None,
        pinned_env: Mapping[str, str] | None = None,
    ) -> None:
        self.git = git
        self.artifact = artifact
        self.validation_timeout = validation_timeout
        self.forwarded_args = list(forwarded_args or [])
        self.pinned_env = dict(pinned_env or {})

    @property
    def artifact_path(self) -> Path:
        """Absolute path of the package in the workspace."""
        return self.git.path / self.artifact

    @property
    def module_name(self) -> str:
        """Importable name of the package."""
        return self.artifact_path.name

    async def will_self_change(self, current: str, target: str) -> bool:
        """Whether the package differs between two revisions."""
        changed = await self.git.path_changed(current, target, self.artifact)
        if changed:
            logger.info(
                "Updater changes with this switch",
                extra={"artifact": self.artifact, "from": current[:12], "to": target[:12]},
            )
        return changed

    async def validate(self) -> None:
        """
        Check the new package before trusting it.

        Raises:
            ArtifactValidationFailedError: If the package is missing, does not
                compile, or does not start.
        """
        path = self.artifact_path
        if not (path / "__main__.py").is_file():
            raise ArtifactValidationFailedError(
                f"Updater package missing or not runnable after checkout: {path}",
                details={"artifact": str(path)},
            )

        for module in sorted(path.rglob("*.py")):
            try:
                compile(module.read_bytes(), str(module), "exec")
            except (SyntaxError, ValueError) as e:
                raise ArtifactValidationFailedError(
                    f"Updater has syntax errors: {e}",
                    details={"artifact": str(path), "module": str(module)},
                ) from e

        await self._check_starts(path)
        logger.info("Updater package validated", extra={"artifact": str(path)})

    def prepare_handoff(self, stash: StashEntry | None = None) -> Handoff:
        """Build the command line that resumes the update in the new package."""
        stash_commit = stash.commit if stash is not None else None
        argv = [
            sys.executable,
            "-m",
            self.module_name,
            *self.forwarded_args,
            RESUME_COMMAND,
            "--stash",
            stash_commit or NO_STASH,
        ]
        env = self._child_env()
        env.update(self.pinned_env)
        return Handoff(
            artifact=self.artifact_path, argv=argv, env=env, stash_commit=stash_commit
        )

    def _child_env(self) -> dict[str, str]:
        """Environment that imports the package from the workspace first."""
        env = dict(os.environ)
        search_root = str(self.artifact_path.parent)
        existing = env.get("PYTHONPATH")
        env["PYTHONPATH"] = f"{search_root}{os.pathsep}{existing}" if existing else search_root
        # Keep __pycache__ out of the workspace
        env["PYTHONDONTWRITEBYTECODE"] = "1"
        return env

    async def _check_starts(self, path: Path) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                self.module_name,
                "--version",
                cwd=str(path.parent),
                env=self._child_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ArtifactValidationFailedError(
                f"Cannot run {sys.executable} to check the new updater",
                details={"artifact": str(path)},
            ) from e

        try:
            _, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.validation_timeout
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ArtifactValidationFailedError(
                f"New updater did not start within {self.validation_timeout}s",
                details={"artifact": str(path)},
            ) from e

        if proc.returncode != 0:
            raise ArtifactValidationFailedError(
                "New updater fails to start",
                details={
                    "artifact": str(path),
                    "output": stderr.decode(errors="replace").strip() if stderr else "",
                },
            )


def execute_handoff(handoff: Handoff) -> None:
    """
    Replace the running process with the new updater. Does not return.

    Raises:
        ProcessReplacementFailedError: If the OS refused the replacement.
    """
    logger.info(
        "Handing off to the new updater",
        extra={"artifact": str(handoff.artifact), "stash": handoff.stash_commit},
    )
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()
    sys.stdout.flush()
    sys.stderr.flush()

    try:
        os.execve(handoff.argv[0], handoff.argv, handoff.env or dict(os.environ))
    except OSError as e:
        search_root = shlex.quote(str(handoff.artifact.parent))
        resume = " ".join(shlex.quote(arg) for arg in handoff.argv)
        raise ProcessReplacementFailedError(
            f"Could not start the new updater: {e}",
            details={
                "artifact": str(handoff.artifact),
                "stash": handoff.stash_commit,
                "hint": (
                    f"The workspace is at the new version but nothing is running it. "
                    f"Run manually: PYTHONPATH={search_root} {resume}"
                ),
            },
        ) from e
