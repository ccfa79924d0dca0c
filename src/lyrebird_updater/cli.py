"""
Command line entry point for the LyreBirdAudio version manager.

    lyrebird-updater status
    lyrebird-updater list
    lyrebird-updater switch <tag|branch|commit|latest-stable|latest-dev>
    lyrebird-updater update
    lyrebird-updater reset <target> --confirm DELETE
    lyrebird-updater backup
    lyrebird-updater recover
    lyrebird-updater resume --stash <commit|none>

Results go to stdout, logs to stderr. Errors map to the exit statuses below.
SIGINT and SIGTERM cancel the running operation, which rolls back before the
process exits with 130 or 143.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import yaml
from pydantic import ValidationError

from lyrebird_updater import __version__
from lyrebird_updater.config import AppConfig, load_config
from lyrebird_updater.errors import (
    OperationCancelledError,
    ProcessReplacementFailedError,
    UpdaterError,
)
from lyrebird_updater.logging import get_logger, setup_logging
from lyrebird_updater.updates.cancellation import CancellationToken
from lyrebird_updater.updates.engine import (
    LocalChangesPolicy,
    OutcomeStatus,
    SwitchOutcome,
    UpdateEngine,
    build_engine,
)
from lyrebird_updater.updates.self_update import NO_STASH, Handoff, execute_handoff

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_GENERAL = 1
EXIT_NOT_A_REPOSITORY = 2
EXIT_GIT_ERROR = 3
EXIT_USER_ABORT = 4
EXIT_NETWORK = 5
EXIT_MERGE_CONFLICT = 6
EXIT_PREREQUISITES = 7
EXIT_LOCKED = 8
EXIT_SERVICE = 9
EXIT_ARTIFACT_INVALID = 10
EXIT_PROCESS_REPLACEMENT = 70

_EXIT_CODES: dict[str, int] = {
    "not_a_repository": EXIT_NOT_A_REPOSITORY,
    "bad_repository_state": EXIT_GIT_ERROR,
    "checkout_failed": EXIT_GIT_ERROR,
    "checkout_verification_failed": EXIT_GIT_ERROR,
    "stash_failed": EXIT_GIT_ERROR,
    "user_abort": EXIT_USER_ABORT,
    "network_error": EXIT_NETWORK,
    "merge_conflict": EXIT_MERGE_CONFLICT,
    "unavailable": EXIT_PREREQUISITES,
    "permission_denied": EXIT_PREREQUISITES,
    "locked": EXIT_LOCKED,
    "service_stop_failed": EXIT_SERVICE,
    "service_start_failed": EXIT_SERVICE,
    "reinstall_failed": EXIT_SERVICE,
    "artifact_validation_failed": EXIT_ARTIFACT_INVALID,
    "process_replacement_failed": EXIT_PROCESS_REPLACEMENT,
}


def exit_code_for(error: UpdaterError) -> int:
    """Map an error to the process exit status."""
    if isinstance(error, OperationCancelledError):
        signal_number = error.signal_number or signal.SIGINT
        return 128 + int(signal_number)
    return _EXIT_CODES.get(error.error_code, EXIT_GENERAL)


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lyrebird-updater",
        description="LyreBirdAudio version manager",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--repo",
        type=str,
        help="Path of the LyreBirdAudio checkout",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    status = commands.add_parser("status", help="Show version, workspace and service state")
    status.add_argument("--json", action="store_true", help="Print JSON")

    listing = commands.add_parser("list", help="List available versions")
    listing.add_argument("--json", action="store_true", help="Print JSON")
    listing.add_argument("--no-fetch", action="store_true", help="Use cached refs only")

    switch = commands.add_parser("switch", help="Switch to a version")
    switch.add_argument("target", help="Tag, branch, commit, latest-stable or latest-dev")
    _add_policy_argument(switch)
    switch.add_argument("--no-fetch", action="store_true", help="Use cached refs only")

    update = commands.add_parser("update", help="Update the current branch")
    _add_policy_argument(update)

    reset = commands.add_parser(
        "reset", help="Discard ALL local changes and reset to a version"
    )
    reset.add_argument("target", help="Tag, branch or commit to reset to")
    reset.add_argument(
        "--confirm",
        metavar="TOKEN",
        help="Type DELETE to confirm the destructive reset",
    )

    commands.add_parser("backup", help="Save local changes in a named stash")
    commands.add_parser("recover", help="Finish or roll back an interrupted update")

    resume = commands.add_parser("resume", help="Continue an update after self-update")
    resume.add_argument(
        "--stash",
        default=NO_STASH,
        help="Stash carried over from the previous updater, or 'none'",
    )
    return parser


def _add_policy_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--local-changes",
        choices=[policy.value for policy in LocalChangesPolicy],
        default=LocalChangesPolicy.STASH.value,
        help="What to do with local modifications (default: stash)",
    )


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Turn global options into configuration overrides."""
    result: dict[str, Any] = {}

    if args.repo:
        result["repository"] = {"path": args.repo}

    logging_section: dict[str, Any] = {}
    if args.log_level:
        logging_section["level"] = args.log_level
    if args.debug:
        logging_section["debug_mode"] = True
        logging_section["level"] = "debug"
    if args.json_logs:
        logging_section["json_format"] = True
    if logging_section:
        result["logging"] = logging_section

    return result


def forwarded_options(args: argparse.Namespace) -> list[str]:
    """Global options repeated on the command line of a resumed updater."""
    result: list[str] = []
    if args.config:
        result += ["--config", os.path.abspath(args.config)]
    if args.repo:
        result += ["--repo", os.path.abspath(args.repo)]
    if args.log_level:
        result += ["--log-level", args.log_level]
    if args.debug:
        result.append("--debug")
    if args.json_logs:
        result.append("--json-logs")
    return result


# =============================================================================
# Commands
# =============================================================================

CommandResult = tuple[int, Handoff | None]
Command = Callable[[UpdateEngine, argparse.Namespace], Awaitable[CommandResult]]


async def _cmd_status(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    report = await engine.status()
    if args.json:
        print(json.dumps(report, indent=2))
        return EXIT_SUCCESS, None

    print(f"Version:     {report['version']}")
    if report["detached"]:
        print(f"Branch:      (detached HEAD at {report['head'][:12]})")
    else:
        print(f"Branch:      {report['branch']}")
    print(f"Remote:      {report['remote_url'] or '(none)'}")
    print(f"Workspace:   {report['repository_state']}")
    for line in report["modified_files"]:
        print(f"    {line}")
    if report["behind"]:
        print(f"Updates:     {report['behind']} commit(s) behind remote")
    if report["ahead"]:
        print(f"             {report['ahead']} commit(s) ahead of remote")

    service = report["service"]
    if not service["supported"]:
        print(f"Service:     {service['name']}: unsupported on this host")
    elif not service["installed"]:
        print(f"Service:     {service['name']}: not installed")
    else:
        restarts = service["restart_count"]
        print(
            f"Service:     {service['name']}: {service['status']}, "
            f"{'enabled' if service['is_enabled'] else 'disabled'}"
            + (f", {restarts} restart(s)" if restarts is not None else "")
        )

    pending = report["pending_update"]
    if pending:
        print(
            "Pending:     unfinished update "
            f"({pending.get('operation') or pending.get('error')}), run 'recover'"
        )
    return EXIT_SUCCESS, None


async def _cmd_list(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    candidates = await engine.list_candidates(fetch=not args.no_fetch)
    if args.json:
        print(json.dumps(candidates, indent=2))
        return EXIT_SUCCESS, None

    if candidates["used_cached_refs"]:
        print("Warning: could not fetch updates, showing cached versions")
    print("Releases:")
    if not candidates["tags"]:
        print("  (no release tags)")
    for tag in candidates["tags"]:
        current = "  <- current" if tag["current"] else ""
        print(f"  {tag['name']:<20} {tag['date'] or '':<12}{current}")
    print("Branches:")
    for branch in candidates["branches"]:
        default = "  (development)" if branch["default"] else ""
        print(f"  {branch['name']}{default}")
    return EXIT_SUCCESS, None


async def _cmd_switch(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    outcome = await engine.switch(
        args.target,
        policy=LocalChangesPolicy(args.local_changes),
        fetch=not args.no_fetch,
    )
    return _report_switch(outcome)


async def _cmd_update(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    outcome = await engine.update_current(policy=LocalChangesPolicy(args.local_changes))
    return _report_switch(outcome)


async def _cmd_reset(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    outcome = await engine.reset_clean(args.target, args.confirm)
    for warning in outcome.warnings:
        print(f"Warning: {warning}")
    print(f"Reset complete. Now on: {outcome.version}")
    return EXIT_SUCCESS, None


async def _cmd_backup(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    entry = await engine.backup_local_changes()
    if entry is None:
        print("No local changes to back up")
        return EXIT_SUCCESS, None
    print(f"Backup created: {entry.message}")
    print("To restore it later:")
    print("  git stash list              # find the backup")
    print(f"  git stash apply {entry.commit}")
    return EXIT_SUCCESS, None


async def _cmd_recover(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    outcome = await engine.recover()
    if outcome.action == "none":
        print("No unfinished update found")
    elif outcome.action == "completed":
        print(f"Unfinished update completed. Now on: {outcome.switch.version}")
    else:
        print("Unfinished update rolled back to the previous version")
    return EXIT_SUCCESS, None


async def _cmd_resume(engine: UpdateEngine, args: argparse.Namespace) -> CommandResult:
    stash = None if args.stash in ("", NO_STASH) else args.stash
    outcome = await engine.resume(stash)
    return _report_switch(outcome)


_COMMANDS: dict[str, Command] = {
    "status": _cmd_status,
    "list": _cmd_list,
    "switch": _cmd_switch,
    "update": _cmd_update,
    "reset": _cmd_reset,
    "backup": _cmd_backup,
    "recover": _cmd_recover,
    "resume": _cmd_resume,
}


def _report_switch(outcome: SwitchOutcome) -> CommandResult:
    if outcome.used_cached_refs:
        print("Warning: could not fetch updates, used cached versions")

    if outcome.status is OutcomeStatus.UNCHANGED:
        print(f"Already up to date: {outcome.version}")
        return EXIT_SUCCESS, None

    if outcome.status is OutcomeStatus.HANDOFF:
        print("The updater itself changed, restarting with the new version...")
        return EXIT_SUCCESS, outcome.handoff

    print(f"Now on: {outcome.version}")
    if outcome.stash_restored:
        print("Your local changes were restored")
    elif outcome.kept_stash is not None:
        print(
            "Your local changes could not be re-applied automatically; "
            f"they are saved in stash '{outcome.kept_stash.message}':"
        )
        print(f"  git stash apply {outcome.kept_stash.commit}")
    return EXIT_SUCCESS, None


def _report_error(error: UpdaterError) -> None:
    print(f"Error: {error.message}", file=sys.stderr)
    details = dict(error.details)
    hint = details.pop("hint", None)
    manual = details.pop("manual_recovery", None)
    if hint:
        print(f"Hint: {hint}", file=sys.stderr)
    if manual:
        print("Manual recovery required:", file=sys.stderr)
        for step in manual:
            print(f"  - {step}", file=sys.stderr)


# =============================================================================
# Entry point
# =============================================================================


async def run_command(
    args: argparse.Namespace,
    config: AppConfig,
    *,
    engine: UpdateEngine | None = None,
) -> CommandResult:
    """
    Run one command with SIGINT/SIGTERM wired to cancellation.

    Returns:
        (exit status, handoff to perform or None).
    """
    token = engine.token if engine is not None else CancellationToken()
    engine = engine or build_engine(
        config, token=token, forwarded_args=forwarded_options(args)
    )

    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, token.cancel, int(signum))
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for signal {signum}")

    try:
        code, handoff = await _COMMANDS[args.command](engine, args)
        if token.cancelled:
            # Signal arrived after the last point where rollback was possible
            error = OperationCancelledError(
                f"{args.command} finished, but a termination signal was received",
                signal_number=token.signal_number,
            )
            _report_error(error)
            return exit_code_for(error), None
        return code, handoff
    except UpdaterError as e:
        logger.error(
            f"{args.command} failed: {e.message}",
            extra={"error_code": e.error_code},
        )
        _report_error(e)
        return exit_code_for(e), None
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def main(argv: list[str] | None = None) -> int:
    """Console script entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, overrides=cli_overrides(args))
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_PREREQUISITES

    setup_logging(config.logging)
    code, handoff = asyncio.run(run_command(args, config))
    if handoff is None:
        return code

    try:
        execute_handoff(handoff)
    except ProcessReplacementFailedError as e:
        logger.critical(e.message, extra={"error_code": e.error_code})
        _report_error(e)
        return exit_code_for(e)
    return code
