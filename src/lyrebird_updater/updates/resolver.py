"""
Version resolution for the LyreBirdAudio version manager.

A target is resolved in a fixed order: tag, local branch, remote branch, raw
commit id. A name that is both a tag and a branch therefore always resolves to
the tag. Aliases ("latest-stable", "latest-dev") are expanded first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from lyrebird_updater.errors import InvalidArgumentError, NetworkError, NotFoundError
from lyrebird_updater.git import GitRepository, looks_like_object_id
from lyrebird_updater.logging import get_logger
from lyrebird_updater.updates.cancellation import CancellationToken

logger = get_logger(__name__)

STABLE_ALIASES = frozenset({"latest-stable", "stable", "latest"})
DEVELOPMENT_ALIASES = frozenset({"latest-dev", "dev", "development"})

_PRERELEASE_RE = re.compile(r"-?(alpha|beta|rc|pre|dev)", re.IGNORECASE)


class TargetKind(str, Enum):
    """What a version target resolved to."""

    TAG = "tag"
    LOCAL_BRANCH = "local_branch"
    REMOTE_BRANCH = "remote_branch"
    COMMIT = "commit"

    @property
    def is_branch(self) -> bool:
        """Whether the target is a branch."""
        return self in (TargetKind.LOCAL_BRANCH, TargetKind.REMOTE_BRANCH)


@dataclass(frozen=True)
class VersionTarget:
    """
    A resolved version target.

    Attributes:
        raw_input: What the operator asked for.
        name: Tag or branch name after alias expansion (commit id for commits).
        resolved_kind: Tag, local branch, remote branch or commit.
        resolved_ref: Fully qualified ref, or the commit id for commits.
        commit: Commit id the target points at.
    """

    raw_input: str
    name: str
    resolved_kind: TargetKind
    resolved_ref: str
    commit: str


@dataclass(frozen=True)
class Candidates:
    """Switchable versions, newest first."""

    tags: list[str]
    branches: list[str]
    default_branch: str


class VersionResolver:
    """
    Fetches remote refs and resolves operator input to a VersionTarget.

    Attributes:
        git: Repository collaborator.
        fetch_timeout: Timeout of one fetch attempt.
        fetch_retries: Number of attempts.
        fetch_backoff: Fixed delay between attempts.
    """

    def __init__(
        self,
        git: GitRepository,
        *,
        fetch_timeout: float = 60.0,
        fetch_retries: int = 3,
        fetch_backoff: float = 5.0,
        token: CancellationToken | None = None,
    ) -> None:
        self.git = git
        self.fetch_timeout = fetch_timeout
        self.fetch_retries = fetch_retries
        self.fetch_backoff = fetch_backoff
        self._token = token or CancellationToken()

    async def fetch_remote(
        self,
        timeout: float | None = None,
        retries: int | None = None,
        backoff: float | None = None,
    ) -> None:
        """
        Fetch tags and branches, retrying with a fixed delay.

        Raises:
            NetworkError: If every attempt failed. Callers may continue on
                cached refs but must say so.
        """
        timeout = timeout if timeout is not None else self.fetch_timeout
        retries = max(1, retries if retries is not None else self.fetch_retries)
        backoff = backoff if backoff is not None else self.fetch_backoff

        last_error: NetworkError | None = None
        for attempt in range(1, retries + 1):
            self._token.raise_if_cancelled()
            try:
                logger.info(
                    "Fetching latest repository information",
                    extra={"attempt": attempt, "remote": self.git.remote},
                )
                await self.git.check_remote(timeout)
                await self.git.fetch(timeout)
                logger.info("Repository information updated")
                return
            except NetworkError as e:
                last_error = e
                logger.warning(
                    f"Fetch attempt {attempt}/{retries} failed: {e.message}",
                    extra={"attempt": attempt},
                )
                if attempt < retries:
                    await self._token.sleep(backoff)

        assert last_error is not None
        raise NetworkError(
            f"Could not fetch from {self.git.remote} after {retries} attempts",
            details={**last_error.details, "attempts": retries},
        ) from last_error

    async def default_branch(self) -> str:
        """Detect the development branch (remote HEAD, main, master)."""
        branch = await self.git.remote_default_branch()
        if branch:
            return branch
        for candidate in ("main", "master"):
            if await self.git.ref_exists(f"refs/remotes/{self.git.remote}/{candidate}"):
                return candidate
        local = await self.git.local_branches("main", "master")
        return local[0] if local else "main"

    async def latest_stable(self) -> str:
        """
        Return the newest release tag, skipping pre-releases.

        Raises:
            NotFoundError: If the repository has no release tags.
        """
        releases = [
            tag for tag in await self.git.tags("v*.*.*") if not _PRERELEASE_RE.search(tag)
        ]
        if releases:
            return releases[0]

        fallback = await self.git.tags("v*")
        if fallback:
            return fallback[0]

        raise NotFoundError(
            "No stable releases found in repository",
            details={"hint": "Fetch updates first or pick a branch"},
        )

    async def expand_alias(self, raw_input: str) -> str:
        """Map alias names to concrete tag or branch names."""
        lowered = raw_input.strip().lower()
        if lowered in STABLE_ALIASES:
            tag = await self.latest_stable()
            logger.info(f"Latest stable release: {tag}")
            return tag
        if lowered in DEVELOPMENT_ALIASES:
            return await self.default_branch()
        return raw_input.strip()

    async def resolve(self, raw_input: str) -> VersionTarget:
        """
        Resolve operator input to a target.

        Args:
            raw_input: Tag, branch, commit id or alias.

        Returns:
            The resolved VersionTarget.

        Raises:
            InvalidArgumentError: For empty or option-like input.
            NotFoundError: If the input resolves to nothing.
        """
        if not raw_input or not raw_input.strip():
            raise InvalidArgumentError("No version specified")
        if raw_input.strip().startswith("-"):
            raise InvalidArgumentError(
                f"Invalid version name: {raw_input}",
                details={"target": raw_input},
            )

        name = await self.expand_alias(raw_input)
        remote = self.git.remote

        lookups = (
            (TargetKind.TAG, f"refs/tags/{name}"),
            (TargetKind.LOCAL_BRANCH, f"refs/heads/{name}"),
            (TargetKind.REMOTE_BRANCH, f"refs/remotes/{remote}/{name}"),
        )
        for kind, ref in lookups:
            if await self.git.ref_exists(ref):
                commit = await self.git.rev_parse(ref)
                if commit is None:
                    continue
                target = VersionTarget(
                    raw_input=raw_input,
                    name=name,
                    resolved_kind=kind,
                    resolved_ref=ref,
                    commit=commit,
                )
                logger.debug(
                    f"Resolved {raw_input} as {kind.value}",
                    extra={"target": raw_input, "kind": kind.value, "ref": ref},
                )
                return target

        if looks_like_object_id(name):
            commit = await self.git.rev_parse(name)
            if commit is not None:
                return VersionTarget(
                    raw_input=raw_input,
                    name=commit,
                    resolved_kind=TargetKind.COMMIT,
                    resolved_ref=commit,
                    commit=commit,
                )

        raise NotFoundError(
            f"Unknown or unreachable version: {raw_input}",
            details={
                "target": raw_input,
                "hint": "Fetch updates first, list available versions, or check the spelling",
            },
        )

    async def list_candidates(self) -> Candidates:
        """List release tags and remote branches, newest first."""
        return Candidates(
            tags=await self.git.tags("v*", sort="-creatordate"),
            branches=await self.git.remote_branches(),
            default_branch=await self.default_branch(),
        )
