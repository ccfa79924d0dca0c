"""
Update engine for the LyreBirdAudio version manager.

UpdateEngine owns one instance of each collaborator and runs every operator
command under the update lock:

    lock → recover unfinished update → repository gate → fetch → resolve
         → transaction (stash, service prepare, checkout, self-update check,
           service complete, stash restore, commit)

Any failure before commit rolls the transaction back, restoring the service
from its backup. A switch that changes the updater itself ends in a Handoff
outcome; the command line performs the process replacement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lyrebird_updater.config import DEFAULT_ENV_PREFIX, AppConfig
from lyrebird_updater.errors import (
    CheckoutFailedError,
    CheckoutVerificationFailedError,
    FailedPreconditionError,
    InternalError,
    NetworkError,
    NotARepositoryError,
    UpdaterError,
    UserAbortError,
)
from lyrebird_updater.git import GitRepository, StashEntry
from lyrebird_updater.logging import get_logger
from lyrebird_updater.service.coordinator import ServiceLifecycleCoordinator
from lyrebird_updater.service.systemd import (
    ServiceManagerBackend,
    SystemdServiceManager,
    get_service_status,
)
from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.lock import UpdateLock
from lyrebird_updater.updates.marker import (
    MarkerStore,
    ServiceSnapshot,
    UpdateMarker,
    UpdatePhase,
)
from lyrebird_updater.updates.repo_state import RepoState, classify, require_switchable
from lyrebird_updater.updates.resolver import TargetKind, VersionResolver, VersionTarget
from lyrebird_updater.updates.self_update import Handoff, SelfUpdateGuard
from lyrebird_updater.updates.transaction import (
    RollbackReport,
    Transaction,
    unique_stash_message,
)

logger = get_logger(__name__)

RESET_CONFIRMATION_TOKEN = "DELETE"
MANUAL_BACKUP_PREFIX = "manual-backup"


class LocalChangesPolicy(str, Enum):
    """What to do with uncommitted edits before a switch."""

    STASH = "stash"
    DISCARD = "discard"
    ABORT = "abort"


class OutcomeStatus(str, Enum):
    """How a switch ended."""

    COMPLETED = "completed"
    HANDOFF = "handoff"
    UNCHANGED = "unchanged"


@dataclass
class SwitchOutcome:
    """
    Result of a switch, update or resume.

    Attributes:
        status: completed, handoff or unchanged.
        version: Human-readable version after the operation.
        target: Resolved target, if any.
        stash_restored: Whether stashed edits were re-applied (None if there
            were none).
        kept_stash: Stash left in place because it could not be re-applied.
        handoff: Process replacement to perform (status handoff only).
        used_cached_refs: Whether the fetch failed and cached refs were used.
    """

    status: OutcomeStatus
    version: str | None = None
    target: VersionTarget | None = None
    stash_restored: bool | None = None
    kept_stash: StashEntry | None = None
    handoff: Handoff | None = None
    used_cached_refs: bool = False


@dataclass
class RecoveryOutcome:
    """Result of handling an unfinished update found on start-up."""

    action: str = "none"
    marker: UpdateMarker | None = None
    switch: SwitchOutcome | None = None
    report: RollbackReport | None = None


@dataclass
class ResetOutcome:
    """Result of a destructive reset."""

    target: VersionTarget
    version: str
    used_cached_refs: bool = False
    warnings: list[str] = field(default_factory=list)


class UpdateEngine:
    """
    Top-level coordinator of version switches.

    Attributes:
        git: Repository collaborator.
        resolver: Version resolver.
        transaction: The single checkout transaction.
        coordinator: Background service lifecycle.
        guard: Self-update guard.
        lock: Update lock.
        marker_store: Crash-recovery marker.
    """

    def __init__(
        self,
        git: GitRepository,
        resolver: VersionResolver,
        transaction: Transaction,
        coordinator: ServiceLifecycleCoordinator,
        guard: SelfUpdateGuard,
        lock: UpdateLock,
        marker_store: MarkerStore,
        *,
        token: CancellationToken | None = None,
        lock_timeout: float = 30.0,
        executable_scripts: list[str] | None = None,
        expected_remote: str | None = None,
    ) -> None:
        self.git = git
        self.resolver = resolver
        self.transaction = transaction
        self.coordinator = coordinator
        self.guard = guard
        self.lock = lock
        self.marker_store = marker_store
        self.token = token or CancellationToken()
        self.lock_timeout = lock_timeout
        self.executable_scripts = list(executable_scripts or [])
        self.expected_remote = expected_remote

    # -------------------------------------------------------------------------
    # Operator commands
    # -------------------------------------------------------------------------

    async def switch(
        self,
        raw_target: str,
        *,
        policy: LocalChangesPolicy = LocalChangesPolicy.STASH,
        fetch: bool = True,
    ) -> SwitchOutcome:
        """
        Switch the installation to a tag, branch, commit or alias.

        Raises:
            UpdaterError: Any failure; the transaction has been rolled back.
        """
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            await self._recover_if_pending()
            await require_switchable(self.git)
            cached = await self._fetch() if fetch else False
            target = await self.resolver.resolve(raw_target)
            outcome = await self._switch_to(target, policy, label=f"switch {target.name}")
            outcome.used_cached_refs = cached
            return outcome

    async def update_current(
        self,
        *,
        policy: LocalChangesPolicy = LocalChangesPolicy.STASH,
    ) -> SwitchOutcome:
        """
        Bring the current branch up to date with its remote counterpart.

        Raises:
            FailedPreconditionError: In detached-HEAD state.
        """
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            await self._recover_if_pending()
            await require_switchable(self.git)

            branch = await self.git.current_branch()
            if branch is None:
                raise FailedPreconditionError(
                    "Cannot update: currently in detached HEAD state",
                    details={
                        "hint": "Switch to a branch first, e.g. the development branch"
                    },
                )

            cached = await self._fetch()
            head = await self.git.head()
            target = VersionTarget(
                raw_input=branch,
                name=branch,
                resolved_kind=TargetKind.LOCAL_BRANCH,
                resolved_ref=f"refs/heads/{branch}",
                commit=head,
            )
            outcome = await self._switch_to(target, policy, label=f"update {branch}")
            outcome.used_cached_refs = cached
            return outcome

    async def reset_clean(self, raw_target: str, confirmation: str | None) -> ResetOutcome:
        """
        Discard every local change and reset to ``raw_target``.

        The target is validated before the confirmation token is checked.

        Raises:
            UserAbortError: If ``confirmation`` is not exactly "DELETE".
        """
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            await self._recover_if_pending()
            cached = await self._fetch()
            target = await self.resolver.resolve(raw_target)

            if confirmation != RESET_CONFIRMATION_TOKEN:
                raise UserAbortError(
                    "Reset cancelled: confirmation did not match",
                    details={"hint": f"Type {RESET_CONFIRMATION_TOKEN} to confirm"},
                )

            logger.warning(
                f"Resetting to {target.name}, discarding all local changes",
                extra={"target": target.raw_input, "commit": target.commit},
            )
            result = await self.git.reset_hard(target.commit)
            if not result.ok:
                raise CheckoutFailedError(
                    f"Failed to reset to {target.name}",
                    details={"git_output": result.output},
                )

            warnings = []
            cleaned = await self.git.clean()
            if not cleaned.ok:
                warnings.append(f"Could not remove untracked files: {cleaned.output}")
                logger.warning(warnings[-1])

            failed = await self.git.set_executable(self.executable_scripts)
            warnings.extend(f"Could not set execute permission on {p}" for p in failed)

            head = await self.git.head()
            if head != target.commit:
                raise CheckoutVerificationFailedError(
                    f"Workspace is at {head[:12]}, expected {target.commit[:12]}",
                    details={"expected": target.commit, "actual": head},
                )

            version = await self.git.describe()
            logger.info(f"Reset complete, now on: {version}")
            return ResetOutcome(
                target=target, version=version, used_cached_refs=cached, warnings=warnings
            )

    async def backup_local_changes(self) -> StashEntry | None:
        """
        Save local changes in a stash named ``manual-backup-<time>-<pid>``.

        Returns:
            The stash, or None when there is nothing to save.
        """
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            await self._recover_if_pending()
            if not await self.git.has_local_changes():
                logger.info("No local changes to back up")
                return None
            entry = await self.git.stash_push(unique_stash_message(MANUAL_BACKUP_PREFIX))
            logger.info(
                f"Backup created: {entry.message}",
                extra={"stash": entry.commit, "stash_message": entry.message},
            )
            return entry

    async def status(self) -> dict[str, Any]:
        """
        Report version, workspace, service and pending-update state.

        Read-only: takes no lock and never recovers.
        """
        await self._preflight()
        branch = await self.git.current_branch()
        head = await self.git.head()
        repo_state = await classify(self.git)

        ahead = behind = None
        if branch is not None:
            counts = await self.git.ahead_behind(f"refs/remotes/{self.git.remote}/{branch}")
            if counts is not None:
                ahead, behind = counts

        service_status = await get_service_status(self.coordinator.manager, self.coordinator.service)
        service_status["installed"] = self.coordinator.unit_path.is_file()
        service_status["name"] = self.coordinator.service

        pending: dict[str, Any] | None = None
        try:
            marker = self.marker_store.load()
        except UpdaterError as e:
            pending = {"error": e.message, "marker": str(self.marker_store.path)}
        else:
            if marker is not None:
                pending = {
                    "operation": marker.operation,
                    "phase": marker.phase.value,
                    "target": marker.target,
                    "created_at": marker.created_at,
                    "marker": str(self.marker_store.path),
                }

        return {
            "version": await self.git.describe(),
            "branch": branch,
            "detached": branch is None,
            "head": head,
            "remote_url": await self.git.remote_url(),
            "repository_state": repo_state.value,
            "modified_files": (
                await self.git.status_short() if repo_state is not RepoState.CLEAN else []
            ),
            "ahead": ahead,
            "behind": behind,
            "service": service_status,
            "pending_update": pending,
        }

    async def list_candidates(self, *, fetch: bool = True) -> dict[str, Any]:
        """List release tags (with dates) and remote branches, newest first."""
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            cached = await self._fetch() if fetch else False
            candidates = await self.resolver.list_candidates()
            head = await self.git.head()

            tags = []
            for tag in candidates.tags:
                tags.append(
                    {
                        "name": tag,
                        "date": await self.git.commit_date(tag),
                        "current": await self.git.rev_parse(f"refs/tags/{tag}") == head,
                    }
                )
            branches = [
                {"name": name, "default": name == candidates.default_branch}
                for name in candidates.branches
            ]
            return {
                "tags": tags,
                "branches": branches,
                "default_branch": candidates.default_branch,
                "used_cached_refs": cached,
            }

    async def recover(self) -> RecoveryOutcome:
        """Finish or roll back an unfinished update, if one is recorded."""
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            return await self._recover_if_pending()

    async def resume(self, stash_commit: str | None = None) -> SwitchOutcome:
        """
        Continue an update handed off by the previous updater process.

        Args:
            stash_commit: Stash carried over the handoff, or None.
        """
        await self._preflight()
        async with self.lock.held(self.lock_timeout):
            marker = self.marker_store.load()
            if marker is None:
                logger.info("No unfinished update to resume")
                return await self._restore_orphan_stash(stash_commit)

            if stash_commit and marker.stash_commit and stash_commit != marker.stash_commit:
                logger.warning(
                    "Stash passed on the command line differs from the recorded one, "
                    "using the recorded stash",
                    extra={"stash": marker.stash_commit, "argument": stash_commit},
                )
            elif stash_commit and not marker.stash_commit:
                marker.stash_commit = stash_commit

            outcome = await self._recover_marker(marker)
            if outcome.switch is not None:
                return outcome.switch
            return SwitchOutcome(
                status=OutcomeStatus.UNCHANGED, version=await self.git.describe()
            )

    # -------------------------------------------------------------------------
    # Switch pipeline
    # -------------------------------------------------------------------------

    async def _switch_to(
        self,
        target: VersionTarget,
        policy: LocalChangesPolicy,
        *,
        label: str,
    ) -> SwitchOutcome:
        if await self._already_at(target):
            version = await self.git.describe()
            logger.info(f"Already on {target.name}", extra={"target": target.raw_input})
            return SwitchOutcome(status=OutcomeStatus.UNCHANGED, version=version, target=target)

        await self.transaction.begin(label)
        try:
            return await self._run_switch(target, policy)
        except Exception as e:
            report = await self.transaction.rollback()
            _attach_report(e, report)
            raise

    async def _run_switch(
        self,
        target: VersionTarget,
        policy: LocalChangesPolicy,
    ) -> SwitchOutcome:
        tx = self.transaction
        if await classify(self.git) is RepoState.DIRTY:
            await self._apply_policy(policy)

        stash = tx.state.stash_handle
        marker = UpdateMarker(
            operation=tx.state.operation_label or "switch",
            target=target.raw_input,
            target_ref=target.resolved_ref,
            target_commit=target.commit,
            original_ref=tx.state.original_ref,
            original_head=tx.state.original_head or await self.git.head(),
            created_branch=(
                target.name if target.resolved_kind is TargetKind.REMOTE_BRANCH else None
            ),
            stash_commit=stash.commit if stash else None,
            stash_message=stash.message if stash else None,
            phase=UpdatePhase.STASHED,
        )
        if stash is not None:
            # Recovery must be able to find the stash from here on
            self.marker_store.save(marker)
        snapshot = await self.coordinator.prepare(marker)
        self.token.raise_if_cancelled()

        await tx.checkout(target)
        await tx.fast_forward(target)
        await self.git.set_executable(self.executable_scripts)

        new_head = await self.git.head()
        marker.target_commit = new_head
        marker.phase = UpdatePhase.CHECKED_OUT
        self.marker_store.save(marker)
        self.token.raise_if_cancelled()

        if await self.guard.will_self_change(marker.original_head, new_head):
            await self.guard.validate()
            marker.phase = UpdatePhase.HANDOFF
            self.marker_store.save(marker)
            handoff = self.guard.prepare_handoff(stash)
            tx.handoff()
            return SwitchOutcome(
                status=OutcomeStatus.HANDOFF,
                version=await self.git.describe(),
                target=target,
                handoff=handoff,
            )

        outcome = await self._finish(snapshot)
        outcome.target = target
        return outcome

    async def _finish(self, snapshot: ServiceSnapshot) -> SwitchOutcome:
        """Complete the service lifecycle, restore the stash and commit."""
        tx = self.transaction
        self.token.raise_if_cancelled()
        await self.git.set_executable(self.executable_scripts)
        await self.coordinator.complete(snapshot, self.git.path)

        stash = tx.state.stash_handle
        stash_restored = None
        if stash is not None:
            stash_restored = await tx.restore_stash(stash)
        tx.commit()

        version = await self.git.describe()
        logger.info(f"Now on: {version}", extra={"version": version})
        return SwitchOutcome(
            status=OutcomeStatus.COMPLETED,
            version=version,
            stash_restored=stash_restored,
            kept_stash=stash if stash_restored is False else None,
        )

    async def _apply_policy(self, policy: LocalChangesPolicy) -> None:
        if policy is LocalChangesPolicy.STASH:
            await self.transaction.stash_if_dirty()
        elif policy is LocalChangesPolicy.DISCARD:
            await self.transaction.discard_local_changes()
        else:
            raise UserAbortError(
                "Local modifications present, operation cancelled",
                details={
                    "modified_files": await self.git.status_short(),
                    "hint": "Commit, back up or discard the changes first",
                },
            )

    async def _already_at(self, target: VersionTarget) -> bool:
        head = await self.git.head()
        if head != target.commit:
            return False

        branch = await self.git.current_branch()
        if not target.resolved_kind.is_branch:
            return branch is None

        if branch != target.name:
            return False
        remote_commit = await self.git.rev_parse(
            f"refs/remotes/{self.git.remote}/{target.name}"
        )
        return remote_commit is None or remote_commit == head

    # -------------------------------------------------------------------------
    # Crash recovery
    # -------------------------------------------------------------------------

    async def _recover_if_pending(self) -> RecoveryOutcome:
        marker = self.marker_store.load()
        if marker is None:
            return RecoveryOutcome()
        return await self._recover_marker(marker)

    async def _recover_marker(self, marker: UpdateMarker) -> RecoveryOutcome:
        """
        Complete the recorded update if the workspace reached its target,
        otherwise roll it back.
        """
        logger.warning(
            f"Found an unfinished update: {marker.operation}",
            extra={
                "operation": marker.operation,
                "phase": marker.phase.value,
                "marker": str(self.marker_store.path),
            },
        )
        head = await self.git.head()
        tx = self.transaction
        tx.adopt(marker)
        self.coordinator.adopt(marker.snapshot)

        reached_target = (
            marker.target_commit is not None
            and marker.target_commit != marker.original_head
            and head == marker.target_commit
        )
        if reached_target:
            try:
                switch = await self._finish(marker.snapshot)
            except Exception as e:
                report = await tx.rollback()
                _attach_report(e, report)
                raise
            logger.info("Unfinished update completed")
            return RecoveryOutcome(action="completed", marker=marker, switch=switch)

        report = await tx.rollback()
        if not report.clean:
            raise InternalError(
                "Could not roll back the unfinished update",
                details={"manual_recovery": report.manual_steps},
            )
        self.token.rearm()
        logger.info("Unfinished update rolled back")
        return RecoveryOutcome(action="rolled_back", marker=marker, report=report)

    async def _restore_orphan_stash(self, stash_commit: str | None) -> SwitchOutcome:
        version = await self.git.describe()
        if not stash_commit:
            return SwitchOutcome(status=OutcomeStatus.UNCHANGED, version=version)

        entry = StashEntry(commit=stash_commit, message=stash_commit)
        restored = await self.transaction.restore_stash(entry)
        return SwitchOutcome(
            status=OutcomeStatus.COMPLETED,
            version=version,
            stash_restored=restored,
            kept_stash=None if restored else entry,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _preflight(self) -> None:
        """
        Check the workspace is a repository and warn about foreign remotes.

        Raises:
            NotARepositoryError: If there is no repository with a valid HEAD.
        """
        if not await self.git.is_repository():
            raise NotARepositoryError(
                f"Not a git repository: {self.git.path}",
                details={
                    "path": str(self.git.path),
                    "hint": "Run from the LyreBirdAudio checkout or set repository.path",
                },
            )

        url = await self.git.remote_url()
        if url is None:
            logger.warning(f"No remote named {self.git.remote} is configured")
        elif self.expected_remote and self.expected_remote not in url:
            logger.warning(
                f"Remote URL does not match {self.expected_remote}",
                extra={"remote_url": url},
            )

    async def _fetch(self) -> bool:
        """
        Fetch from the remote.

        Returns:
            True if the fetch failed and cached refs are used instead.
        """
        try:
            await self.resolver.fetch_remote()
        except NetworkError as e:
            logger.warning(
                f"Could not fetch updates, using cached repository data: {e.message}",
                extra={"remote": self.git.remote},
            )
            return True
        return False


def _attach_report(error: BaseException, report: RollbackReport) -> None:
    if isinstance(error, UpdaterError):
        error.details.setdefault("rolled_back", True)
        if report.manual_steps:
            error.details["manual_recovery"] = report.manual_steps


def build_engine(
    config: AppConfig,
    *,
    token: CancellationToken | None = None,
    service_manager: ServiceManagerBackend | None = None,
    forwarded_args: list[str] | None = None,
) -> UpdateEngine:
    """
    Wire an UpdateEngine from configuration.

    Args:
        config: Application configuration.
        token: Cancellation token shared by every collaborator.
        service_manager: Service-manager backend (systemd by default).
        forwarded_args: Global options repeated on a self-update handoff.
    """
    token = token or CancellationToken()
    repo = config.repository

    git = GitRepository(repo.path, remote=repo.remote, timeout=repo.command_timeout_seconds)
    marker_store = MarkerStore(config.state.marker_path)
    coordinator = ServiceLifecycleCoordinator.from_config(
        config.service,
        service_manager or SystemdServiceManager(),
        marker_store,
        token=token,
    )
    transaction = Transaction(
        git,
        coordinator=coordinator,
        marker_store=marker_store,
        token=token,
        executable_scripts=repo.executable_scripts,
    )
    resolver = VersionResolver(
        git,
        fetch_timeout=repo.fetch_timeout_seconds,
        fetch_retries=repo.fetch_retries,
        fetch_backoff=repo.fetch_backoff_seconds,
        token=token,
    )
    guard = SelfUpdateGuard(
        git,
        config.self_update.artifact,
        validation_timeout=config.self_update.validation_timeout_seconds,
        forwarded_args=forwarded_args,
        pinned_env=handoff_environment(config),
    )
    lock = UpdateLock(
        config.lock.path,
        config.lock.program_name,
        poll_interval=config.lock.poll_interval_seconds,
        stale_grace=config.lock.stale_grace_seconds,
        token=token,
    )
    return UpdateEngine(
        git,
        resolver,
        transaction,
        coordinator,
        guard,
        lock,
        marker_store,
        token=token,
        lock_timeout=config.lock.timeout_seconds,
        executable_scripts=repo.executable_scripts,
        expected_remote=repo.expected_remote,
    )


def handoff_environment(config: AppConfig) -> dict[str, str]:
    """
    Environment overrides that keep a resumed updater on this process's state.

    Whatever configuration the new process loads, it works on the same
    checkout, waits on the same lock and finds the same marker.
    """
    return {
        f"{DEFAULT_ENV_PREFIX}REPOSITORY__PATH": str(config.repository.path),
        f"{DEFAULT_ENV_PREFIX}LOCK__PATH": str(config.lock.path),
        f"{DEFAULT_ENV_PREFIX}STATE__MARKER_PATH": str(config.state.marker_path),
    }
