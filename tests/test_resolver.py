"""
Tests for version resolution.

Tests cover:
- Resolution order: tag, local branch, remote branch, commit id
- Alias expansion (latest-stable, latest-dev)
- Invalid and unknown input
- Fetch retries and the final network error
- Candidate listing
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import GitSandbox
from lyrebird_updater.errors import InvalidArgumentError, NetworkError, NotFoundError
from lyrebird_updater.git import GitRepository
from lyrebird_updater.updates.resolver import TargetKind, VersionResolver

pytestmark = pytest.mark.integration


@pytest.fixture
def resolver(git_repo: GitRepository) -> VersionResolver:
    """Resolver with a single quick fetch attempt."""
    return VersionResolver(git_repo, fetch_timeout=30, fetch_retries=1, fetch_backoff=0)


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """Tests for VersionResolver.resolve()."""

    @pytest.mark.asyncio
    async def test_tag(self, resolver: VersionResolver, sandbox: GitSandbox) -> None:
        """Test a release tag resolves to its commit."""
        target = await resolver.resolve("v1.0.0")

        assert target.resolved_kind is TargetKind.TAG
        assert target.resolved_ref == "refs/tags/v1.0.0"
        assert target.commit == sandbox.git("rev-parse", "v1.0.0^{commit}")

    @pytest.mark.asyncio
    async def test_tag_wins_over_branch(
        self, resolver: VersionResolver, sandbox: GitSandbox
    ) -> None:
        """Test a name that is both a tag and a branch resolves to the tag."""
        commit = sandbox.publish({"README.md": "two\n"}, "Second", tag="v2.0.0")
        await resolver.fetch_remote()
        sandbox.git("branch", "v1.0.0", "origin/main")

        target = await resolver.resolve("v1.0.0")

        assert target.resolved_kind is TargetKind.TAG
        assert target.commit != commit

    @pytest.mark.asyncio
    async def test_local_branch(self, resolver: VersionResolver) -> None:
        """Test the checked-out branch resolves as a local branch."""
        target = await resolver.resolve("main")

        assert target.resolved_kind is TargetKind.LOCAL_BRANCH
        assert target.resolved_ref == "refs/heads/main"

    @pytest.mark.asyncio
    async def test_remote_branch(
        self, resolver: VersionResolver, sandbox: GitSandbox
    ) -> None:
        """Test a branch that only exists on the remote."""
        commit = sandbox.publish({"feature.txt": "x\n"}, "Feature", branch="feature")
        await resolver.fetch_remote()

        target = await resolver.resolve("feature")

        assert target.resolved_kind is TargetKind.REMOTE_BRANCH
        assert target.resolved_ref == "refs/remotes/origin/feature"
        assert target.commit == commit

    @pytest.mark.asyncio
    async def test_commit_id(self, resolver: VersionResolver, sandbox: GitSandbox) -> None:
        """Test an abbreviated commit id resolves to the full id."""
        head = sandbox.head()

        target = await resolver.resolve(head[:10])

        assert target.resolved_kind is TargetKind.COMMIT
        assert target.commit == head
        assert target.name == head

    @pytest.mark.asyncio
    async def test_empty_input(self, resolver: VersionResolver) -> None:
        """Test empty input is rejected."""
        with pytest.raises(InvalidArgumentError):
            await resolver.resolve("  ")

    @pytest.mark.asyncio
    async def test_option_like_input(self, resolver: VersionResolver) -> None:
        """Test input starting with a dash never reaches git."""
        resolver.git.run = AsyncMock()

        with pytest.raises(InvalidArgumentError):
            await resolver.resolve("--upload-pack=evil")
        resolver.git.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown(self, resolver: VersionResolver) -> None:
        """Test an unknown name raises NotFoundError with a hint."""
        with pytest.raises(NotFoundError) as exc_info:
            await resolver.resolve("v9.9.9")

        assert exc_info.value.details["target"] == "v9.9.9"
        assert "hint" in exc_info.value.details


# =============================================================================
# Aliases
# =============================================================================


class TestAliases:
    """Tests for alias expansion."""

    @pytest.mark.asyncio
    async def test_latest_stable_skips_prereleases(
        self, resolver: VersionResolver, sandbox: GitSandbox
    ) -> None:
        """Test latest-stable picks the newest non-prerelease tag."""
        sandbox.publish({"README.md": "1.1\n"}, "1.1", tag="v1.1.0")
        sandbox.publish({"README.md": "2.0 rc\n"}, "2.0 rc", tag="v2.0.0-rc1")
        await resolver.fetch_remote()

        target = await resolver.resolve("latest-stable")

        assert target.name == "v1.1.0"
        assert target.raw_input == "latest-stable"
        assert target.resolved_kind is TargetKind.TAG

    @pytest.mark.asyncio
    async def test_latest_dev_is_default_branch(self, resolver: VersionResolver) -> None:
        """Test latest-dev resolves to the remote default branch."""
        target = await resolver.resolve("latest-dev")

        assert target.name == "main"
        assert target.resolved_kind is TargetKind.LOCAL_BRANCH

    @pytest.mark.asyncio
    async def test_no_tags(self, resolver: VersionResolver, sandbox: GitSandbox) -> None:
        """Test latest-stable without any release tag."""
        sandbox.git("tag", "-d", "v1.0.0")

        with pytest.raises(NotFoundError):
            await resolver.resolve("latest-stable")


# =============================================================================
# Fetching and listing
# =============================================================================


class TestFetch:
    """Tests for fetch_remote() and list_candidates()."""

    @pytest.mark.asyncio
    async def test_fetch_brings_new_tags(
        self, resolver: VersionResolver, sandbox: GitSandbox
    ) -> None:
        """Test a fetch makes newly published tags resolvable."""
        sandbox.publish({"README.md": "two\n"}, "Second", tag="v2.0.0")
        with pytest.raises(NotFoundError):
            await resolver.resolve("v2.0.0")

        await resolver.fetch_remote()

        assert (await resolver.resolve("v2.0.0")).resolved_kind is TargetKind.TAG

    @pytest.mark.asyncio
    async def test_unreachable_remote_retries(
        self, git_repo: GitRepository, sandbox: GitSandbox
    ) -> None:
        """Test every attempt is made before NetworkError is raised."""
        sandbox.git("remote", "set-url", "origin", str(sandbox.root / "gone.git"))
        resolver = VersionResolver(git_repo, fetch_timeout=10, fetch_retries=2, fetch_backoff=0)

        with pytest.raises(NetworkError) as exc_info:
            await resolver.fetch_remote()

        assert exc_info.value.details["attempts"] == 2

    @pytest.mark.asyncio
    async def test_list_candidates(
        self, resolver: VersionResolver, sandbox: GitSandbox
    ) -> None:
        """Test tags are listed newest first with the default branch."""
        sandbox.publish({"README.md": "two\n"}, "Second", tag="v2.0.0")
        sandbox.publish({"feature.txt": "x\n"}, "Feature", branch="feature")
        await resolver.fetch_remote()

        candidates = await resolver.list_candidates()

        assert set(candidates.tags) == {"v1.0.0", "v2.0.0"}
        assert set(candidates.branches) == {"main", "feature"}
        assert candidates.default_branch == "main"
