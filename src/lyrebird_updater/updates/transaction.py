"""
Checkout transaction for the LyreBirdAudio version manager.

A Transaction wraps a single version switch:

    begin(label) → stash_if_dirty() → checkout(target) → restore_stash() → commit()

and guarantees that rollback() can return the workspace to where it started
from any partially-completed point, including after a successful checkout.

Rollback order is fixed and every step tolerates the failure of the previous
ones:

1. disarm the cancellation token (no re-entrant rollback on a second signal)
2. return the workspace to the original branch, or the original commit, and
   delete a local branch the checkout created
3. re-apply the stash, reporting its location if that fails
4. restore the service from backup if an update marker exists, then remove it
5. clear the transaction state
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from lyrebird_updater.errors import (
    AlreadyActiveError,
    CheckoutFailedError,
    CheckoutVerificationFailedError,
    FailedPreconditionError,
    MergeConflictError,
    UpdaterError,
)
from lyrebird_updater.git import GitRepository, StashEntry
from lyrebird_updater.logging import get_logger
from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.resolver import TargetKind, VersionTarget

if TYPE_CHECKING:
    from lyrebird_updater.service.coordinator import ServiceLifecycleCoordinator
    from lyrebird_updater.updates.marker import MarkerStore, UpdateMarker

logger = get_logger(__name__)

STASH_PREFIX = "lyrebird-updater-backup"


def unique_stash_message(prefix: str = STASH_PREFIX) -> str:
    """Return ``<prefix>-<YYYYmmdd-HHMMSS>-<pid>``."""
    return f"{prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{os.getpid()}"


@dataclass
class TransactionState:
    """
    In-memory state of the active transaction.

    Attributes:
        active: Whether a transaction is open.
        operation_label: What the transaction is doing (e.g. "switch v2.0.0").
        stash_handle: Stash of local edits taken at the start, if any.
        original_ref: Branch checked out at the start (None when detached).
        original_head: Commit checked out at the start.
        workspace_mutated: Whether a checkout was attempted.
        created_branch: Local branch the checkout creates, deleted on rollback.
    """

    active: bool = False
    operation_label: str | None = None
    stash_handle: StashEntry | None = None
    original_ref: str | None = None
    original_head: str | None = None
    workspace_mutated: bool = False
    created_branch: str | None = None


@dataclass
class RollbackReport:
    """Outcome of a rollback; ``manual_steps`` is empty on full success."""

    workspace_restored: bool = True
    stash_restored: bool | None = None
    service_restored: bool | None = None
    manual_steps: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """Whether everything was restored automatically."""
        return not self.manual_steps


class Transaction:
    """
    Begin/stash/checkout/commit/rollback state machine over the workspace.

    At most one transaction is active per instance; the engine owns exactly
    one instance.
    """

    def __init__(
        self,
        git: GitRepository,
        *,
        coordinator: ServiceLifecycleCoordinator | None = None,
        marker_store: MarkerStore | None = None,
        token: CancellationToken | None = None,
        executable_scripts: list[str] | None = None,
    ) -> None:
        self.git = git
        self.coordinator = coordinator
        self.marker_store = marker_store
        self.executable_scripts = list(executable_scripts or [])
        self._token = token or CancellationToken()
        self._state = TransactionState()

    @property
    def state(self) -> TransactionState:
        """Current transaction state."""
        return self._state

    @property
    def active(self) -> bool:
        """Whether a transaction is open."""
        return self._state.active

    # -------------------------------------------------------------------------
    # Forward path
    # -------------------------------------------------------------------------

    async def begin(self, label: str) -> TransactionState:
        """
        Open a transaction, recording where the workspace is now.

        Raises:
            AlreadyActiveError: If a transaction is already open.
        """
        if self._state.active:
            raise AlreadyActiveError(
                f"A transaction is already active: {self._state.operation_label}",
                details={"operation": self._state.operation_label},
            )

        self._state = TransactionState(
            active=True,
            operation_label=label,
            original_ref=await self.git.current_branch(),
            original_head=await self.git.head(),
        )
        logger.info(
            f"Transaction started: {label}",
            extra={
                "operation": label,
                "original_ref": self._state.original_ref,
                "original_head": self._state.original_head,
            },
        )
        return self._state

    def adopt(self, marker: UpdateMarker) -> TransactionState:
        """
        Re-open the transaction recorded in an update marker.

        Used when a new process finishes or rolls back an update begun by
        another one (after a crash or a self-update handoff).
        """
        if self._state.active:
            raise AlreadyActiveError(
                f"A transaction is already active: {self._state.operation_label}",
                details={"operation": self._state.operation_label},
            )

        stash = None
        if marker.stash_commit:
            stash = StashEntry(
                commit=marker.stash_commit,
                message=marker.stash_message or marker.stash_commit,
            )
        self._state = TransactionState(
            active=True,
            operation_label=marker.operation,
            stash_handle=stash,
            original_ref=marker.original_ref,
            original_head=marker.original_head,
            workspace_mutated=True,
            created_branch=marker.created_branch,
        )
        logger.info(
            f"Resuming interrupted transaction: {marker.operation}",
            extra={"operation": marker.operation, "phase": marker.phase.value},
        )
        return self._state

    async def stash_if_dirty(self, prefix: str = STASH_PREFIX) -> StashEntry | None:
        """
        Stash local edits under a unique name if there are any.

        Returns:
            The stash, or None if the workspace was clean.

        Raises:
            StashFailedError: If git could not stash the changes.
        """
        self._require_active()
        if not await self.git.has_local_changes():
            return None

        entry = await self.git.stash_push(unique_stash_message(prefix))
        self._state.stash_handle = entry
        logger.info(
            f"Local changes saved: {entry.message}",
            extra={"stash": entry.commit, "stash_message": entry.message},
        )
        return entry

    async def discard_local_changes(self) -> None:
        """Discard modifications to tracked files."""
        self._require_active()
        logger.warning("Discarding local changes")
        result = await self.git.reset_hard("HEAD")
        if not result.ok:
            raise CheckoutFailedError(
                "Failed to discard local changes",
                details={"git_output": result.output},
            )

    async def checkout(self, target: VersionTarget) -> None:
        """
        Check out ``target`` and verify HEAD landed on its commit.

        Raises:
            CheckoutFailedError: If git refused the checkout.
            CheckoutVerificationFailedError: If HEAD is not the target commit.
        """
        self._require_active()
        self._token.raise_if_cancelled()
        self._state.workspace_mutated = True
        if target.resolved_kind is TargetKind.REMOTE_BRANCH:
            self._state.created_branch = target.name

        logger.info(
            f"Switching to {target.name}",
            extra={"target": target.raw_input, "kind": target.resolved_kind.value},
        )
        result = await self.git.checkout(*_checkout_args(target, self.git.remote))
        if not result.ok:
            raise CheckoutFailedError(
                f"Failed to switch to {target.name}",
                details={"target": target.raw_input, "git_output": result.output},
            )

        head = await self.git.head()
        if head != target.commit:
            raise CheckoutVerificationFailedError(
                f"Workspace is at {head[:12]}, expected {target.commit[:12]}",
                details={
                    "target": target.raw_input,
                    "expected": target.commit,
                    "actual": head,
                },
            )

    async def fast_forward(self, target: VersionTarget) -> bool:
        """
        Fast-forward a branch target to its remote counterpart.

        A fast-forward that git refuses is only a warning; unmerged paths
        are an error.

        Returns:
            True if the branch moved or was already current.

        Raises:
            MergeConflictError: If the merge left unmerged paths.
        """
        self._require_active()
        if not target.resolved_kind.is_branch:
            return True

        remote_ref = f"refs/remotes/{self.git.remote}/{target.name}"
        if not await self.git.ref_exists(remote_ref):
            return True

        self._token.raise_if_cancelled()
        logger.info("Pulling latest changes", extra={"target": target.name})
        result = await self.git.merge_ff_only(remote_ref)
        if result.ok:
            return True

        unmerged = await self.git.unmerged_paths()
        if unmerged:
            raise MergeConflictError(
                f"Merge conflicts while updating {target.name}",
                details={
                    "paths": unmerged,
                    "hint": "Rolling back; resolve the divergence manually",
                },
            )

        logger.warning(
            "Fast-forward not possible, continuing with the current state",
            extra={"target": target.name, "git_output": result.output},
        )
        return False

    async def restore_stash(self, entry: StashEntry | None = None) -> bool:
        """
        Re-apply a stash and drop it on success.

        Tries ``stash apply --index`` first, then a plain apply. If both fail
        the workspace is reset to HEAD (it was clean before the attempt) and
        the stash is kept.

        Returns:
            True if the changes were re-applied (or there was nothing to apply).
        """
        entry = entry or self._state.stash_handle
        if entry is None:
            return True

        was_clean = not await self.git.has_local_changes()
        for keep_index in (True, False):
            result = await self.git.stash_apply(entry.commit, index=keep_index)
            if result.ok:
                if not await self.git.stash_drop(entry.commit):
                    logger.warning(
                        "Changes restored but the stash could not be dropped",
                        extra={"stash": entry.commit},
                    )
                logger.info(
                    "Local changes restored",
                    extra={"stash": entry.commit, "index": keep_index},
                )
                if self._state.stash_handle == entry:
                    self._state.stash_handle = None
                return True

            logger.warning(
                f"Stash apply failed: {result.output}",
                extra={"stash": entry.commit, "index": keep_index},
            )
            if not was_clean:
                break
            await self.git.reset_hard("HEAD")
            await self.git.clean()

        selector = await self.git.stash_selector(entry.commit)
        logger.warning(
            f"Your changes are still saved in stash: {entry.message}",
            extra={"stash": entry.commit, "selector": selector},
        )
        return False

    def commit(self) -> None:
        """Close the transaction, keeping the new workspace state."""
        if not self._state.active:
            return
        logger.info(
            f"Transaction committed: {self._state.operation_label}",
            extra={"operation": self._state.operation_label},
        )
        self._state = TransactionState()

    def handoff(self) -> None:
        """
        Forget the transaction without rolling back.

        The update marker now carries it; the next process adopts it.
        """
        logger.info(
            "Transaction handed off",
            extra={"operation": self._state.operation_label},
        )
        self._state = TransactionState()

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self) -> RollbackReport:
        """
        Undo the transaction. Safe to call repeatedly and when inactive.

        Returns:
            RollbackReport with manual steps for anything not restored.
        """
        report = RollbackReport()
        if not self._state.active:
            return report

        self._token.disarm()
        state = self._state
        logger.warning(
            f"Rolling back: {state.operation_label}",
            extra={"operation": state.operation_label},
        )

        if state.workspace_mutated:
            try:
                report.workspace_restored = await self._restore_workspace(state)
            except UpdaterError as e:
                logger.error(f"Workspace restore failed: {e.message}")
                report.workspace_restored = False
            if not report.workspace_restored:
                report.manual_steps.append(
                    f"Return the workspace to the previous version: "
                    f"git checkout --force {state.original_ref or state.original_head}"
                )
            elif state.created_branch:
                await self._delete_created_branch(state)

        if state.stash_handle is not None:
            entry = state.stash_handle
            try:
                report.stash_restored = await self.restore_stash(entry)
            except UpdaterError as e:
                logger.error(f"Stash restore failed: {e.message}")
                report.stash_restored = False
            if not report.stash_restored:
                report.manual_steps.append(
                    f"Your local changes are in stash '{entry.message}' "
                    f"({entry.commit}): git stash apply {entry.commit}"
                )

        await self._restore_service(report)
        await self.git.set_executable(self.executable_scripts)

        self._state = TransactionState()
        if report.clean:
            logger.info("Rollback complete")
        else:
            logger.error(
                "Rollback incomplete, manual recovery required",
                extra={"manual_steps": report.manual_steps},
            )
        return report

    async def _restore_workspace(self, state: TransactionState) -> bool:
        original_head = state.original_head
        if original_head is None:
            return False

        restored = False
        if state.original_ref:
            branch_commit = await self.git.rev_parse(f"refs/heads/{state.original_ref}")
            if branch_commit is not None:
                result = await self.git.checkout("--force", state.original_ref)
                restored = result.ok
                if restored and branch_commit != original_head:
                    restored = (await self.git.reset_hard(original_head)).ok
            else:
                logger.warning(
                    f"Branch {state.original_ref} no longer exists, "
                    "restoring the original commit instead"
                )

        if not restored:
            result = await self.git.checkout("--force", "--detach", original_head)
            restored = result.ok

        if restored and await self.git.head() != original_head:
            restored = False

        if restored:
            logger.info(
                "Workspace restored",
                extra={"original_ref": state.original_ref, "original_head": original_head},
            )
        return restored

    async def _delete_created_branch(self, state: TransactionState) -> None:
        branch = state.created_branch
        if branch == state.original_ref or await self.git.current_branch() == branch:
            return
        if not await self.git.ref_exists(f"refs/heads/{branch}"):
            return
        result = await self.git.delete_branch(branch)
        if result.ok:
            logger.info(f"Removed branch {branch} created by the switch")
        else:
            logger.warning(
                f"Could not remove branch {branch} created by the switch",
                extra={"git_output": result.output},
            )

    async def _restore_service(self, report: RollbackReport) -> None:
        if self.marker_store is None:
            return
        try:
            marker = self.marker_store.load()
        except UpdaterError as e:
            report.service_restored = False
            report.manual_steps.append(
                f"Update marker is unreadable ({e.message}); restore the service "
                f"definition manually, then delete {self.marker_store.path}"
            )
            return
        if marker is None:
            return

        if self.coordinator is not None:
            report.service_restored = await self.coordinator.rollback(marker.snapshot)
        else:
            report.service_restored = True

        if report.service_restored:
            self.marker_store.delete()
            return

        backups = marker.snapshot.backup_paths
        report.manual_steps.append(
            "Restore the service definition from backup: "
            f"{backups.service_file or '(no service backup)'}"
            + (f", schedule file: {backups.cron_file}" if backups.cron_file else "")
        )
        report.manual_steps.append(
            "Then run: systemctl daemon-reload && systemctl restart "
            f"{self.coordinator.service if self.coordinator else 'the service'}"
        )
        report.manual_steps.append(
            f"Finally delete the update marker: {self.marker_store.path}"
        )

    def _require_active(self) -> None:
        if not self._state.active:
            raise FailedPreconditionError("No active transaction")


def _checkout_args(target: VersionTarget, remote: str) -> list[str]:
    """Checkout arguments for each target kind."""
    if target.resolved_kind is TargetKind.LOCAL_BRANCH:
        return [target.name]
    if target.resolved_kind is TargetKind.REMOTE_BRANCH:
        return ["-b", target.name, "--track", f"{remote}/{target.name}"]
    # Tags and commits detach; the full ref keeps a same-named branch out of the way
    return ["--detach", target.resolved_ref]
