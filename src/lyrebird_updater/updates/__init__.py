"""
Update transaction engine for the LyreBirdAudio version manager.

This package implements the pieces a version switch is made of:
- Directory lock with stale-holder reclamation
- Repository state classification
- Version resolution and remote fetching
- Checkout transaction with rollback
- Crash-recovery marker
- Self-update validation and handoff
- Cooperative cancellation

The UpdateEngine that wires them together lives in
lyrebird_updater.updates.engine.
"""

from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.lock import LockHandle, UpdateLock
from lyrebird_updater.updates.marker import (
    MarkerStore,
    ServiceSnapshot,
    UpdateMarker,
    UpdatePhase,
)
from lyrebird_updater.updates.repo_state import RepoState, classify, require_switchable
from lyrebird_updater.updates.resolver import TargetKind, VersionResolver, VersionTarget
from lyrebird_updater.updates.self_update import Handoff, SelfUpdateGuard
from lyrebird_updater.updates.transaction import Transaction, TransactionState

__all__ = [
    # Lock
    "UpdateLock",
    "LockHandle",
    # Repository state
    "RepoState",
    "classify",
    "require_switchable",
    # Resolution
    "VersionResolver",
    "VersionTarget",
    "TargetKind",
    # Transaction
    "Transaction",
    "TransactionState",
    # Marker
    "MarkerStore",
    "UpdateMarker",
    "UpdatePhase",
    "ServiceSnapshot",
    # Self-update
    "SelfUpdateGuard",
    "Handoff",
    # Cancellation
    "CancellationToken",
]
