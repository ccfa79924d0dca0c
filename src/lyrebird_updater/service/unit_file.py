"""
Parsing and splicing of the mediamtx-audio service definition.

The stream manager's ``install`` command regenerates the systemd unit from a
template. Operators commonly add their own ``Environment=`` assignments to the
installed unit; those must survive a reinstall. This module works on the unit
text only:

- GENERATOR_ENVIRONMENT_DEFAULTS is the one table of assignments the generator
  emits by itself. Anything else in the unit is an operator customisation.
- extract_custom_environment() diffs a live unit against that table.
- splice_custom_environment() re-inserts the recorded customisations into a
  freshly generated unit without touching generator-controlled lines.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping

# Assignments written by `mediamtx-stream-manager.sh install` when the stream
# manager runs with its built-in settings.
GENERATOR_ENVIRONMENT_DEFAULTS: dict[str, str] = {
    "HOME": "/root",
    "USB_STABILIZATION_DELAY": "10",
    "INVOCATION_ID": "systemd",
    "MEDIAMTX_STREAM_MODE": "individual",
    "MEDIAMTX_COMBINE_METHOD": "amerge",
    "MEDIAMTX_COMBINED_PATH": "combined_audio",
    "MEDIAMTX_ENABLE_FALLBACK": "true",
}

SERVICE_SECTION_ANCHOR = "[Service]"

_ENVIRONMENT_RE = re.compile(r"^\s*Environment\s*=\s*(?P<body>.*?)\s*$")


def is_environment_line(line: str) -> bool:
    """Return True if the line is an ``Environment=`` directive."""
    return _ENVIRONMENT_RE.match(line) is not None


def parse_environment_line(line: str) -> list[tuple[str, str]]:
    """
    Parse the assignments of an ``Environment=`` directive.

    Handles the quoted (``Environment="KEY=value with spaces"``) and bare
    (``Environment=KEY=value OTHER=x``) forms systemd accepts.

    Args:
        line: A single line of the unit file.

    Returns:
        List of (key, value) pairs; empty if the line is not an
        Environment directive or cannot be tokenised.
    """
    match = _ENVIRONMENT_RE.match(line)
    if match is None:
        return []

    try:
        tokens = shlex.split(match.group("body"))
    except ValueError:
        return []

    assignments = []
    for token in tokens:
        if "=" not in token:
            continue
        key, value = token.split("=", 1)
        if key:
            assignments.append((key, value))
    return assignments


def environment_assignments(unit_text: str) -> dict[str, str]:
    """Return the effective environment of a unit (later assignments win)."""
    result: dict[str, str] = {}
    for line in unit_text.splitlines():
        for key, value in parse_environment_line(line):
            result[key] = value
    return result


def extract_custom_environment(
    unit_text: str,
    defaults: Mapping[str, str] = GENERATOR_ENVIRONMENT_DEFAULTS,
) -> list[str]:
    """
    Collect the Environment lines that are not generator defaults.

    A line is custom if any of its assignments is absent from ``defaults`` or
    present with a different value. Lines are returned verbatim (stripped),
    in file order, with exact duplicates removed.

    Args:
        unit_text: Content of the live service definition.
        defaults: Generator-produced default assignments.

    Returns:
        The custom Environment lines.
    """
    custom: list[str] = []
    seen: set[str] = set()

    for line in unit_text.splitlines():
        assignments = parse_environment_line(line)
        if not assignments:
            continue
        if all(defaults.get(key) == value for key, value in assignments):
            continue
        stripped = line.strip()
        if stripped not in seen:
            seen.add(stripped)
            custom.append(stripped)

    return custom


def splice_custom_environment(unit_text: str, custom_lines: list[str]) -> str:
    """
    Insert custom Environment lines into a generated unit.

    The lines go immediately after the last generated Environment line or,
    if there is none, right after the ``[Service]`` header. A custom line whose
    assignments the generated unit already makes with the same values is
    skipped. Every generated line is kept untouched and in order.

    Args:
        unit_text: Freshly generated unit content.
        custom_lines: Lines previously returned by extract_custom_environment.

    Returns:
        The unit content with the customisations applied.
    """
    lines = unit_text.splitlines()
    generated_env = environment_assignments(unit_text)

    pending: list[str] = []
    for custom in custom_lines:
        assignments = parse_environment_line(custom)
        if not assignments:
            continue
        if all(generated_env.get(key) == value for key, value in assignments):
            continue
        if custom not in pending:
            pending.append(custom)

    if not pending:
        return unit_text

    insert_at = None
    for index, line in enumerate(lines):
        if is_environment_line(line):
            insert_at = index + 1

    if insert_at is None:
        for index, line in enumerate(lines):
            if line.strip() == SERVICE_SECTION_ANCHOR:
                insert_at = index + 1
                break

    if insert_at is None:
        # No [Service] section at all: open one so systemd applies the lines
        lines.extend(["", SERVICE_SECTION_ANCHOR])
        insert_at = len(lines)

    lines[insert_at:insert_at] = pending

    trailing_newline = "\n" if unit_text.endswith("\n") or not unit_text else ""
    return "\n".join(lines) + trailing_newline
