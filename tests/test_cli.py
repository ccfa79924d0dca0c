"""
Tests for the command line entry point.

Tests cover:
- Argument parsing and configuration overrides
- Exit status mapping, including signal cancellation
- Command dispatch and output against a mocked engine
- Handoff execution and its failure path in main()
"""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lyrebird_updater.cli import (
    EXIT_GENERAL,
    EXIT_LOCKED,
    EXIT_PREREQUISITES,
    EXIT_PROCESS_REPLACEMENT,
    EXIT_SUCCESS,
    EXIT_USER_ABORT,
    build_parser,
    cli_overrides,
    exit_code_for,
    forwarded_options,
    main,
    run_command,
)
from lyrebird_updater.config import AppConfig
from lyrebird_updater.errors import (
    InternalError,
    LockedError,
    OperationCancelledError,
    ProcessReplacementFailedError,
    ReinstallFailedError,
    UserAbortError,
)
from lyrebird_updater.git import StashEntry
from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.engine import (
    LocalChangesPolicy,
    OutcomeStatus,
    RecoveryOutcome,
    SwitchOutcome,
)
from lyrebird_updater.updates.self_update import Handoff


@pytest.fixture
def mock_engine() -> MagicMock:
    """Engine double with async operator commands."""
    engine = MagicMock()
    engine.token = CancellationToken()
    engine.switch = AsyncMock(
        return_value=SwitchOutcome(status=OutcomeStatus.COMPLETED, version="v2.0.0")
    )
    engine.update_current = AsyncMock()
    engine.backup_local_changes = AsyncMock(return_value=None)
    engine.recover = AsyncMock(return_value=RecoveryOutcome())
    engine.resume = AsyncMock(
        return_value=SwitchOutcome(status=OutcomeStatus.UNCHANGED, version="v2.0.0")
    )
    return engine


def _parse(*argv: str) -> argparse.Namespace:
    return build_parser().parse_args(list(argv))


# =============================================================================
# Parsing
# =============================================================================


class TestParser:
    """Tests for build_parser() and cli_overrides()."""

    def test_switch_defaults(self) -> None:
        """Test switch stashes and fetches by default."""
        args = _parse("switch", "v2.0.0")

        assert args.command == "switch"
        assert args.target == "v2.0.0"
        assert args.local_changes == LocalChangesPolicy.STASH.value
        assert not args.no_fetch

    def test_command_required(self) -> None:
        """Test a command must be given."""
        with pytest.raises(SystemExit):
            _parse()

    def test_invalid_policy(self) -> None:
        """Test unknown local-change policies are rejected."""
        with pytest.raises(SystemExit):
            _parse("switch", "v2.0.0", "--local-changes", "merge")

    def test_resume_default_stash(self) -> None:
        """Test resume carries 'none' when no stash is given."""
        assert _parse("resume").stash == "none"

    def test_no_overrides(self) -> None:
        """Test no global options means no overrides."""
        assert cli_overrides(_parse("status")) == {}

    def test_overrides(self) -> None:
        """Test global options map onto configuration sections."""
        args = _parse("--repo", "/opt/LyreBirdAudio", "--debug", "--json-logs", "status")

        assert cli_overrides(args) == {
            "repository": {"path": "/opt/LyreBirdAudio"},
            "logging": {"debug_mode": True, "level": "debug", "json_format": True},
        }

    def test_forwarded_options(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test global options are repeated with absolute paths for a resumed run."""
        monkeypatch.chdir(tmp_path)
        args = _parse(
            "--config", "updater.yml", "--repo", "checkout", "--debug", "switch", "v2.0.0"
        )

        assert forwarded_options(args) == [
            "--config",
            str(tmp_path / "updater.yml"),
            "--repo",
            str(tmp_path / "checkout"),
            "--debug",
        ]

    def test_nothing_forwarded_by_default(self) -> None:
        """Test a plain command forwards no options."""
        assert forwarded_options(_parse("switch", "v2.0.0")) == []


# =============================================================================
# Exit codes
# =============================================================================


class TestExitCodes:
    """Tests for exit_code_for()."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (LockedError("held"), EXIT_LOCKED),
            (UserAbortError("no"), EXIT_USER_ABORT),
            (ReinstallFailedError("broken"), 9),
            (ProcessReplacementFailedError("exec"), EXIT_PROCESS_REPLACEMENT),
            (InternalError("oops"), EXIT_GENERAL),
        ],
    )
    def test_error_codes(self, error: Exception, expected: int) -> None:
        """Test each error class maps to its exit status."""
        assert exit_code_for(error) == expected

    def test_cancelled_by_sigterm(self) -> None:
        """Test cancellation exits with 128 plus the signal number."""
        error = OperationCancelledError(signal_number=signal.SIGTERM)

        assert exit_code_for(error) == 143

    def test_cancelled_without_signal(self) -> None:
        """Test a cancellation with no recorded signal counts as SIGINT."""
        assert exit_code_for(OperationCancelledError()) == 130


# =============================================================================
# Command dispatch
# =============================================================================


class TestRunCommand:
    """Tests for run_command() with a mocked engine."""

    @pytest.mark.asyncio
    async def test_switch(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a completed switch prints the new version."""
        code, handoff = await run_command(
            _parse("switch", "v2.0.0", "--local-changes", "discard"),
            AppConfig(),
            engine=mock_engine,
        )

        assert (code, handoff) == (EXIT_SUCCESS, None)
        mock_engine.switch.assert_awaited_once_with(
            "v2.0.0", policy=LocalChangesPolicy.DISCARD, fetch=True
        )
        assert "Now on: v2.0.0" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_switch_kept_stash(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test the stash location is printed when edits were not re-applied."""
        stash = StashEntry(commit="c" * 40, message="lyrebird-updater-backup-x")
        mock_engine.switch.return_value = SwitchOutcome(
            status=OutcomeStatus.COMPLETED,
            version="v2.0.0",
            stash_restored=False,
            kept_stash=stash,
        )

        await run_command(_parse("switch", "v2.0.0"), AppConfig(), engine=mock_engine)

        assert f"git stash apply {'c' * 40}" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_handoff_is_returned(self, mock_engine: MagicMock) -> None:
        """Test a handoff outcome is passed back for main() to execute."""
        handoff = Handoff(
            artifact=Path("/opt/LyreBirdAudio/src/lyrebird_updater"),
            argv=[sys.executable, "-m", "lyrebird_updater", "resume", "--stash", "none"],
        )
        mock_engine.switch.return_value = SwitchOutcome(
            status=OutcomeStatus.HANDOFF, version="v2.0.0", handoff=handoff
        )

        code, result = await run_command(
            _parse("switch", "v2.0.0"), AppConfig(), engine=mock_engine
        )

        assert code == EXIT_SUCCESS
        assert result is handoff

    @pytest.mark.asyncio
    async def test_error_is_reported(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test errors print message, hint and manual steps to stderr."""
        mock_engine.switch.side_effect = ReinstallFailedError(
            "Service generator exited with status 1",
            details={"hint": "Check the generator", "manual_recovery": ["Restore the unit"]},
        )

        code, _ = await run_command(_parse("switch", "v2.0.0"), AppConfig(), engine=mock_engine)

        err = capsys.readouterr().err
        assert code == 9
        assert "Error: Service generator exited with status 1" in err
        assert "Hint: Check the generator" in err
        assert "  - Restore the unit" in err

    @pytest.mark.asyncio
    async def test_cancelled_switch(self, mock_engine: MagicMock) -> None:
        """Test a cancelled switch exits with the signal status."""
        mock_engine.switch.side_effect = OperationCancelledError(
            signal_number=signal.SIGINT
        )

        code, _ = await run_command(_parse("switch", "v2.0.0"), AppConfig(), engine=mock_engine)

        assert code == 130

    @pytest.mark.asyncio
    async def test_signal_after_switch_finished(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a signal that arrived too late to roll back still sets the status."""

        async def finish_then_signal(*args, **kwargs) -> SwitchOutcome:
            mock_engine.token.cancel(signal.SIGTERM)
            return SwitchOutcome(status=OutcomeStatus.COMPLETED, version="v2.0.0")

        mock_engine.switch.side_effect = finish_then_signal

        code, handoff = await run_command(
            _parse("switch", "v2.0.0"), AppConfig(), engine=mock_engine
        )

        assert code == 143
        assert handoff is None
        captured = capsys.readouterr()
        assert "Now on: v2.0.0" in captured.out
        assert "termination signal was received" in captured.err

    @pytest.mark.asyncio
    async def test_resume_none_means_no_stash(self, mock_engine: MagicMock) -> None:
        """Test the literal 'none' is not passed on as a stash."""
        await run_command(_parse("resume", "--stash", "none"), AppConfig(), engine=mock_engine)

        mock_engine.resume.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_backup_without_changes(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test the backup command with a clean workspace."""
        await run_command(_parse("backup"), AppConfig(), engine=mock_engine)

        assert "No local changes to back up" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_recover_nothing(
        self, mock_engine: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test recover with no unfinished update."""
        await run_command(_parse("recover"), AppConfig(), engine=mock_engine)

        assert "No unfinished update found" in capsys.readouterr().out


# =============================================================================
# main()
# =============================================================================


class TestMain:
    """Tests for main()."""

    def test_missing_config_file(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test an explicit config file that does not exist."""
        code = main(["--config", str(tmp_path / "missing.yaml"), "status"])

        assert code == EXIT_PREREQUISITES
        assert "invalid configuration" in capsys.readouterr().err

    def test_handoff_failure(self, tmp_path: Path) -> None:
        """Test a refused process replacement exits with its own status."""
        config = tmp_path / "config.yaml"
        config.write_text("repository:\n  path: /opt/LyreBirdAudio\n")
        handoff = Handoff(
            artifact=Path("/opt/LyreBirdAudio/src/lyrebird_updater"),
            argv=[sys.executable, "-m", "lyrebird_updater", "resume", "--stash", "none"],
        )

        with (
            patch("lyrebird_updater.cli.setup_logging"),
            patch(
                "lyrebird_updater.cli.run_command",
                new=AsyncMock(return_value=(EXIT_SUCCESS, handoff)),
            ),
            patch(
                "lyrebird_updater.cli.execute_handoff",
                side_effect=ProcessReplacementFailedError("exec failed"),
            ),
        ):
            code = main(["--config", str(config), "switch", "v2.0.0"])

        assert code == EXIT_PROCESS_REPLACEMENT

    def test_exit_code_passthrough(self, tmp_path: Path) -> None:
        """Test the command status is returned when there is no handoff."""
        config = tmp_path / "config.yaml"
        config.write_text("{}\n")

        with (
            patch("lyrebird_updater.cli.setup_logging"),
            patch(
                "lyrebird_updater.cli.run_command",
                new=AsyncMock(return_value=(EXIT_USER_ABORT, None)),
            ),
        ):
            assert main(["--config", str(config), "reset", "v1.0.0"]) == EXIT_USER_ABORT
