"""
Git collaborator for the LyreBirdAudio version manager.

All version-control access goes through GitRepository. Each method runs one
git command with an explicit timeout and turns its text output into a typed
result, so the engine never parses command output itself.
"""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path

from lyrebird_updater.errors import (
    NetworkError,
    StashFailedError,
    UnavailableError,
)
from lyrebird_updater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class GitResult:
    """Outcome of one git invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr if present, otherwise stdout (for error messages)."""
        return (self.stderr or self.stdout).strip()


@dataclass(frozen=True)
class StashEntry:
    """
    A stash created by the version manager.

    Attributes:
        commit: Object id of the stash commit (stable across other stash ops).
        message: Unique message the stash was created with.
    """

    commit: str
    message: str


async def _run_git(
    *args: str,
    cwd: Path,
    timeout: float = DEFAULT_TIMEOUT,
) -> GitResult:
    """
    Run a git command.

    Args:
        *args: Arguments to pass to git.
        cwd: Working directory (the workspace).
        timeout: Command timeout in seconds.

    Returns:
        GitResult with exit status and decoded output.

    Raises:
        UnavailableError: If git is not installed or the command timed out.
    """
    env = dict(os.environ)
    # Never block on credential or editor prompts
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env.setdefault("GIT_EDITOR", "true")
    env["LC_ALL"] = "C"

    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            "git not available",
            details={"hint": "Install git: sudo apt-get install git"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"git {args[0] if args else ''} timed out after {timeout}s",
            details={"args": list(args)},
        ) from exc

    return GitResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )


class GitRepository:
    """
    Narrow command surface over a git workspace.

    Attributes:
        path: Workspace root.
        remote: Remote name used for fetches and remote branches.
        timeout: Default timeout for local commands.
    """

    def __init__(
        self,
        path: Path | str,
        remote: str = "origin",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.path = Path(path)
        self.remote = remote
        self.timeout = timeout

    async def run(self, *args: str, timeout: float | None = None) -> GitResult:
        """Run a git command in the workspace."""
        result = await _run_git(
            *args, cwd=self.path, timeout=timeout or self.timeout
        )
        logger.debug(
            "git command finished",
            extra={"git_args": list(args), "returncode": result.returncode},
        )
        return result

    # -------------------------------------------------------------------------
    # Repository metadata
    # -------------------------------------------------------------------------

    async def is_repository(self) -> bool:
        """Whether the workspace is inside a git repository with a HEAD."""
        if not self.path.is_dir():
            return False
        result = await self.run("rev-parse", "--verify", "--quiet", "HEAD")
        return result.ok

    async def git_dir(self) -> Path:
        """
        Return the absolute path of the repository metadata directory.

        Raises:
            UnavailableError: If the workspace is not a repository.
        """
        result = await self.run("rev-parse", "--absolute-git-dir")
        if not result.ok:
            raise UnavailableError(
                "Not a git repository",
                details={"path": str(self.path), "git_output": result.output},
            )
        return Path(result.stdout.strip())

    async def remote_url(self) -> str | None:
        """Return the configured URL of the remote."""
        result = await self.run("config", "--get", f"remote.{self.remote}.url")
        url = result.stdout.strip()
        return url if result.ok and url else None

    async def head(self) -> str:
        """
        Return the full object id of HEAD.

        Raises:
            UnavailableError: If HEAD cannot be resolved.
        """
        commit = await self.rev_parse("HEAD")
        if commit is None:
            raise UnavailableError(
                "Cannot resolve HEAD; the repository may be corrupted",
                details={"hint": "Try: git fsck --full"},
            )
        return commit

    async def current_branch(self) -> str | None:
        """Return the checked-out branch name, or None when detached."""
        result = await self.run("symbolic-ref", "--quiet", "--short", "HEAD")
        branch = result.stdout.strip()
        return branch if result.ok and branch else None

    async def describe(self) -> str:
        """Return a human-readable version (nearest tag or short id)."""
        result = await self.run("describe", "--tags", "--always")
        return result.stdout.strip() if result.ok else "unknown"

    async def rev_parse(self, rev: str) -> str | None:
        """Resolve a revision to a commit id, or None if it does not resolve."""
        result = await self.run("rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}")
        commit = result.stdout.strip()
        return commit if result.ok and commit else None

    async def ref_exists(self, ref: str) -> bool:
        """Whether a fully qualified ref (refs/...) exists."""
        result = await self.run("show-ref", "--verify", "--quiet", ref)
        return result.ok

    async def remote_default_branch(self) -> str | None:
        """Read the remote HEAD symbolic reference (e.g. "main")."""
        result = await self.run(
            "symbolic-ref", "--quiet", f"refs/remotes/{self.remote}/HEAD"
        )
        prefix = f"refs/remotes/{self.remote}/"
        ref = result.stdout.strip()
        if result.ok and ref.startswith(prefix):
            return ref[len(prefix) :]
        return None

    async def local_branches(self, *names: str) -> list[str]:
        """Return the local branches among ``names`` (all if none given)."""
        patterns = [f"refs/heads/{name}" for name in names] or ["refs/heads/"]
        result = await self.run(
            "for-each-ref", "--format=%(refname:short)", *patterns
        )
        return _lines(result.stdout) if result.ok else []

    async def remote_branches(self) -> list[str]:
        """Return remote branch names, most recently committed first."""
        result = await self.run(
            "for-each-ref",
            "--sort=-committerdate",
            "--format=%(refname)",
            f"refs/remotes/{self.remote}/",
        )
        if not result.ok:
            return []
        prefix = f"refs/remotes/{self.remote}/"
        return [
            ref[len(prefix) :]
            for ref in _lines(result.stdout)
            if ref.startswith(prefix) and ref != f"{prefix}HEAD"
        ]

    async def tags(self, pattern: str = "v*", sort: str = "-v:refname") -> list[str]:
        """Return tags matching ``pattern`` in the given sort order."""
        result = await self.run("tag", "--list", pattern, f"--sort={sort}")
        return _lines(result.stdout) if result.ok else []

    async def commit_date(self, rev: str) -> str | None:
        """Return the committer date (YYYY-MM-DD) of a revision."""
        result = await self.run("log", "-1", "--format=%cs", rev)
        date = result.stdout.strip()
        return date if result.ok and date else None

    async def ahead_behind(self, upstream: str) -> tuple[int, int] | None:
        """
        Count commits HEAD is ahead of and behind ``upstream``.

        Returns:
            (ahead, behind), or None if upstream does not resolve.
        """
        result = await self.run(
            "rev-list", "--left-right", "--count", f"HEAD...{upstream}"
        )
        if not result.ok:
            return None
        parts = result.stdout.split()
        if len(parts) != 2:
            return None
        return int(parts[0]), int(parts[1])

    # -------------------------------------------------------------------------
    # Workspace state
    # -------------------------------------------------------------------------

    async def has_local_changes(self) -> bool:
        """Whether there are uncommitted modifications or untracked files."""
        await self.run("update-index", "-q", "--refresh")
        diff = await self.run("diff-index", "--quiet", "HEAD", "--")
        if not diff.ok:
            return True
        untracked = await self.run("ls-files", "--others", "--exclude-standard")
        return bool(untracked.stdout.strip())

    async def status_short(self) -> list[str]:
        """Return ``git status --short`` lines."""
        result = await self.run("status", "--short")
        if not result.ok:
            return []
        return [line.rstrip() for line in result.stdout.splitlines() if line.strip()]

    async def unmerged_paths(self) -> list[str]:
        """Return paths with unresolved conflicts."""
        result = await self.run("diff", "--name-only", "--diff-filter=U")
        return _lines(result.stdout) if result.ok else []

    async def path_changed(self, rev_a: str, rev_b: str, path: str) -> bool:
        """Whether ``path`` differs between two revisions."""
        result = await self.run("diff", "--quiet", rev_a, rev_b, "--", path)
        if result.returncode in (0, 1):
            return result.returncode == 1
        raise UnavailableError(
            f"Cannot diff {path} between {rev_a} and {rev_b}",
            details={"git_output": result.output},
        )

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    async def check_remote(self, timeout: float) -> None:
        """
        Check that the remote answers.

        Raises:
            NetworkError: If the remote cannot be reached.
        """
        try:
            result = await self.run(
                "ls-remote", "--exit-code", self.remote, "HEAD", timeout=timeout
            )
        except UnavailableError as e:
            raise NetworkError(
                f"Remote {self.remote} did not answer: {e.message}",
                details={"remote": self.remote},
            ) from e
        if not result.ok:
            raise NetworkError(
                f"Cannot reach remote {self.remote}",
                details={"remote": self.remote, "git_output": result.output},
            )

    async def fetch(self, timeout: float) -> None:
        """
        Fetch branches and tags from the remote, pruning deleted refs.

        Raises:
            NetworkError: If the fetch fails or times out.
        """
        try:
            result = await self.run(
                "fetch", "--tags", "--prune", self.remote, timeout=timeout
            )
        except UnavailableError as e:
            raise NetworkError(
                f"Fetch from {self.remote} failed: {e.message}",
                details={"remote": self.remote},
            ) from e
        if not result.ok:
            raise NetworkError(
                f"Fetch from {self.remote} failed",
                details={"remote": self.remote, "git_output": result.output},
            )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def checkout(self, *args: str) -> GitResult:
        """Run ``git checkout`` with the given arguments."""
        return await self.run("checkout", *args)

    async def delete_branch(self, name: str) -> GitResult:
        """Force-delete a local branch."""
        return await self.run("branch", "-D", name)

    async def merge_ff_only(self, rev: str) -> GitResult:
        """Fast-forward the current branch to ``rev``."""
        return await self.run("merge", "--ff-only", rev)

    async def reset_hard(self, rev: str = "HEAD") -> GitResult:
        """Reset index and working tree to ``rev``."""
        return await self.run("reset", "--hard", rev)

    async def clean(self) -> GitResult:
        """Remove untracked files and directories (ignore rules respected)."""
        return await self.run("clean", "-fd")

    async def stash_push(self, message: str) -> StashEntry:
        """
        Stash tracked and untracked modifications under a unique message.

        Raises:
            StashFailedError: If git refused or nothing was stashed.
        """
        result = await self.run("stash", "push", "--include-untracked", "-m", message)
        if not result.ok:
            raise StashFailedError(
                "Failed to save local changes",
                details={"git_output": result.output},
            )

        entry = await self.find_stash(message)
        if entry is None:
            raise StashFailedError(
                "Stash command succeeded but no stash entry was created",
                details={"message": message, "git_output": result.output},
            )
        return entry

    async def stash_entries(self) -> list[tuple[str, str, str]]:
        """Return (selector, commit, subject) for every stash entry."""
        result = await self.run("stash", "list", "--format=%gd%x09%H%x09%gs")
        if not result.ok:
            return []
        entries = []
        for line in _lines(result.stdout):
            parts = line.split("\t", 2)
            if len(parts) == 3:
                entries.append((parts[0], parts[1], parts[2]))
        return entries

    async def find_stash(self, message: str) -> StashEntry | None:
        """Find the stash created with ``message``."""
        for _selector, commit, subject in await self.stash_entries():
            if subject == message or subject.endswith(f": {message}"):
                return StashEntry(commit=commit, message=message)
        return None

    async def stash_selector(self, commit: str) -> str | None:
        """Return the current ``stash@{n}`` selector of a stash commit."""
        for selector, stash_commit, _subject in await self.stash_entries():
            if stash_commit == commit:
                return selector
        return None

    async def stash_apply(self, commit: str, *, index: bool = True) -> GitResult:
        """Apply a stash commit, optionally restoring the index too."""
        args = ["stash", "apply"]
        if index:
            args.append("--index")
        args.append(commit)
        return await self.run(*args)

    async def stash_drop(self, commit: str) -> bool:
        """Drop a stash by commit id. Returns False if it is not in the list."""
        selector = await self.stash_selector(commit)
        if selector is None:
            return False
        result = await self.run("stash", "drop", selector)
        return result.ok

    async def set_executable(self, relative_paths: list[str]) -> list[str]:
        """
        Set execute bits on workspace files that exist.

        Returns:
            Paths whose mode could not be changed.
        """
        failed = []
        for relative in relative_paths:
            target = self.path / relative
            if not target.is_file():
                logger.debug(f"Script not found (skipping): {relative}")
                continue
            try:
                mode = target.stat().st_mode
                target.chmod(mode | 0o111)
            except OSError as e:
                logger.warning(f"Could not set execute permission on {relative}: {e}")
                failed.append(relative)
        return failed


_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")


def looks_like_object_id(value: str) -> bool:
    """Whether ``value`` is an abbreviated or full hexadecimal object id."""
    return _OBJECT_ID_RE.match(value) is not None


def _lines(text: str) -> list[str]:
    return [line for line in (raw.strip() for raw in text.splitlines()) if line]
