"""
Repository state classification.

classify() inspects the repository metadata for multi-step operations left in
progress and, failing those, for uncommitted or untracked changes. It never
caches: every call reads the workspace afresh.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from lyrebird_updater.errors import BadRepositoryStateError
from lyrebird_updater.git import GitRepository
from lyrebird_updater.logging import get_logger

logger = get_logger(__name__)


class RepoState(str, Enum):
    """State of the workspace."""

    CLEAN = "clean"
    DIRTY = "dirty"
    MERGE_IN_PROGRESS = "merge_in_progress"
    REBASE_IN_PROGRESS = "rebase_in_progress"
    REVERT_IN_PROGRESS = "revert_in_progress"
    CHERRY_PICK_IN_PROGRESS = "cherry_pick_in_progress"
    BISECT_IN_PROGRESS = "bisect_in_progress"
    SEQUENCER_IN_PROGRESS = "sequencer_in_progress"

    @property
    def is_switchable(self) -> bool:
        """Whether a version switch may start from this state."""
        return self in (RepoState.CLEAN, RepoState.DIRTY)


# Checked in order, most specific first. Multi-commit cherry-picks and
# reverts also leave a sequencer directory behind, so it comes last.
_IN_PROGRESS_MARKERS: tuple[tuple[tuple[str, ...], RepoState], ...] = (
    (("rebase-merge", "rebase-apply"), RepoState.REBASE_IN_PROGRESS),
    (("MERGE_HEAD",), RepoState.MERGE_IN_PROGRESS),
    (("CHERRY_PICK_HEAD",), RepoState.CHERRY_PICK_IN_PROGRESS),
    (("REVERT_HEAD",), RepoState.REVERT_IN_PROGRESS),
    (("BISECT_LOG",), RepoState.BISECT_IN_PROGRESS),
    (("sequencer",), RepoState.SEQUENCER_IN_PROGRESS),
)

_RESOLUTION_HINTS: dict[RepoState, str] = {
    RepoState.MERGE_IN_PROGRESS: "git merge --abort (or finish the merge and commit)",
    RepoState.REBASE_IN_PROGRESS: "git rebase --abort (or git rebase --continue)",
    RepoState.REVERT_IN_PROGRESS: "git revert --abort (or git revert --continue)",
    RepoState.CHERRY_PICK_IN_PROGRESS: "git cherry-pick --abort (or --continue)",
    RepoState.BISECT_IN_PROGRESS: "git bisect reset",
    RepoState.SEQUENCER_IN_PROGRESS: "git cherry-pick --quit or git revert --quit",
}


def in_progress_state(git_dir: Path) -> RepoState | None:
    """Return the in-progress operation recorded in ``git_dir``, if any."""
    for names, state in _IN_PROGRESS_MARKERS:
        if any((git_dir / name).exists() for name in names):
            return state
    return None


async def classify(git: GitRepository) -> RepoState:
    """
    Classify the workspace.

    Args:
        git: Repository collaborator.

    Returns:
        The current RepoState.
    """
    state = in_progress_state(await git.git_dir())
    if state is not None:
        return state
    return RepoState.DIRTY if await git.has_local_changes() else RepoState.CLEAN


async def require_switchable(git: GitRepository) -> RepoState:
    """
    Classify the workspace and refuse in-progress states.

    Returns:
        RepoState.CLEAN or RepoState.DIRTY.

    Raises:
        BadRepositoryStateError: If an operation is in progress.
    """
    state = await classify(git)
    if not state.is_switchable:
        hint = _RESOLUTION_HINTS.get(state, "Resolve the operation manually")
        raise BadRepositoryStateError(
            f"Cannot switch versions: {state.value.replace('_', ' ')}",
            details={"state": state.value, "hint": hint, "path": str(git.path)},
        )
    logger.debug("Repository state", extra={"state": state.value})
    return state
