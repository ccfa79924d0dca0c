"""
Process inspection helpers shared by the lock and the command line.

These use psutil so liveness and identity checks behave the same on every
Linux flavour the suite runs on (Raspberry Pi OS, Debian, Ubuntu).
"""

from __future__ import annotations

import os

import psutil


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process with the given PID is running.

    Zombies count as dead: they hold no resources and will never release
    anything they own.

    Args:
        pid: Process ID to check.

    Returns:
        True if the process exists and is not a zombie.
    """
    if pid <= 0:
        return False

    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, owned by someone else
        return True


def process_command_line(pid: int) -> list[str] | None:
    """
    Return the command line of a process.

    Args:
        pid: Process ID.

    Returns:
        The argv list, or None if the process is gone or unreadable.
    """
    try:
        return psutil.Process(pid).cmdline()
    except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
        return None


def process_matches_program(pid: int, program_name: str) -> bool:
    """
    Check whether a live process is an instance of the given program.

    A process matches when the basename of any argv element contains the
    program name; this covers direct execution, ``bash script.sh``,
    ``python -m package`` and console-script launchers alike. An unreadable
    command line is treated as a match so that a live holder is never evicted
    on missing evidence.

    Args:
        pid: Process ID.
        program_name: Expected program name (e.g. "lyrebird-updater").

    Returns:
        True if the process looks like the program.
    """
    cmdline = process_command_line(pid)
    if cmdline is None:
        return is_process_alive(pid)

    needles = {program_name, program_name.replace("-", "_")}
    return any(
        needle in os.path.basename(arg) for arg in cmdline for needle in needles
    )
