"""
Error types for the LyreBirdAudio version manager.

This module defines the UpdaterError base class and the subclasses raised by
the update engine and its collaborators. Every error carries a stable
error_code string which the command line maps to a process exit status, plus
structured details (backup paths, stash identifiers, remediation hints) that
are printed for the operator.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for version manager errors.

    Attributes:
        error_code: Internal error code string (e.g., "locked", "not_found",
            "network_error", "service_stop_failed", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, refs, hints).

    Example:
        >>> raise UpdaterError(
        ...     error_code="not_found",
        ...     message="Unknown version: v9.9.9",
        ...     details={"target": "v9.9.9"},
        ... )
    """

    error_code: str = "internal"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            error_code: Overrides the class-level error code.
        """
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdaterError):
    """Error raised for malformed operator input (empty or option-like targets)."""

    error_code = "invalid_argument"


class PermissionDeniedError(UpdaterError):
    """
    Error raised when the workspace, lock or service paths cannot be written.

    Usually means the tool was started without root privileges.
    """

    error_code = "permission_denied"


class UnavailableError(UpdaterError):
    """
    Error raised when an external tool (git, systemctl, bash) is unavailable
    or a command did not finish within its timeout.
    """

    error_code = "unavailable"


class FailedPreconditionError(UpdaterError):
    """Error raised when the installation is not in a state the operation needs."""

    error_code = "failed_precondition"


class InternalError(UpdaterError):
    """Error raised for unexpected internal failures."""

    error_code = "internal"


class NotARepositoryError(FailedPreconditionError):
    """Error raised when the workspace is not a repository with a valid HEAD."""

    error_code = "not_a_repository"


class LockedError(UpdaterError):
    """
    Error raised when another update holds the lock past the wait timeout.

    The details always contain the holder PID so the operator can intervene.
    """

    error_code = "locked"


class BadRepositoryStateError(UpdaterError):
    """
    Error raised when a merge, rebase, revert, cherry-pick, bisect or
    sequencer operation is in progress in the workspace.
    """

    error_code = "bad_repository_state"


class NotFoundError(UpdaterError):
    """Error raised when a version target resolves to no tag, branch or commit."""

    error_code = "not_found"


class NetworkError(UpdaterError):
    """Error raised when fetching from the remote failed after all retries."""

    error_code = "network_error"


class AlreadyActiveError(UpdaterError):
    """Error raised when a transaction is begun while another is active."""

    error_code = "already_active"


class StashFailedError(UpdaterError):
    """Error raised when local edits could not be set aside."""

    error_code = "stash_failed"


class CheckoutFailedError(UpdaterError):
    """Error raised when the checkout command itself failed."""

    error_code = "checkout_failed"


class CheckoutVerificationFailedError(UpdaterError):
    """Error raised when HEAD does not match the target after a checkout."""

    error_code = "checkout_verification_failed"


class MergeConflictError(UpdaterError):
    """Error raised when unmerged paths are left behind by a branch update."""

    error_code = "merge_conflict"


class ServiceStopFailedError(UpdaterError):
    """Error raised when the service is still active after forced termination."""

    error_code = "service_stop_failed"


class ServiceStartFailedError(UpdaterError):
    """Error raised when the service did not become active within its timeout."""

    error_code = "service_start_failed"


class ReinstallFailedError(UpdaterError):
    """Error raised when the service definition could not be regenerated."""

    error_code = "reinstall_failed"


class ArtifactValidationFailedError(UpdaterError):
    """Error raised when the new updater artifact fails its syntax check."""

    error_code = "artifact_validation_failed"


class ProcessReplacementFailedError(UpdaterError):
    """
    Error raised when replacing the running process with the new artifact fails.

    This is the only error the engine cannot recover from: the new artifact is
    checked out but nothing is running it.
    """

    error_code = "process_replacement_failed"


class OperationCancelledError(UpdaterError):
    """Error raised at the next checkpoint after a termination signal."""

    error_code = "cancelled"

    def __init__(
        self,
        message: str = "Operation cancelled",
        details: dict[str, Any] | None = None,
        *,
        signal_number: int | None = None,
    ) -> None:
        """Initialize an OperationCancelledError."""
        super().__init__(message, details)
        self.signal_number = signal_number


class UserAbortError(UpdaterError):
    """Error raised when the operator declined or gave a wrong confirmation."""

    error_code = "user_abort"
