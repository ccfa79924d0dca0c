"""
Tests for service definition parsing and splicing.

Tests cover:
- Parsing quoted and bare Environment directives
- Extracting operator customisations against the generator defaults
- Splicing customisations into a regenerated unit
"""

from __future__ import annotations

from lyrebird_updater.service.unit_file import (
    environment_assignments,
    extract_custom_environment,
    is_environment_line,
    parse_environment_line,
    splice_custom_environment,
)

GENERATED_UNIT = """\
[Unit]
Description=Mediamtx Audio
After=network.target

[Service]
Type=simple
Environment="HOME=/root"
Environment="USB_STABILIZATION_DELAY=10"
Environment="MEDIAMTX_STREAM_MODE=individual"
ExecStart=/usr/local/bin/mediamtx-stream-manager.sh start

[Install]
WantedBy=multi-user.target
"""


# =============================================================================
# Parsing
# =============================================================================


class TestParseEnvironmentLine:
    """Tests for parse_environment_line()."""

    def test_quoted_assignment(self) -> None:
        """Test the quoted form keeps spaces in values."""
        assert parse_environment_line('Environment="GREETING=hello world"') == [
            ("GREETING", "hello world")
        ]

    def test_bare_multiple_assignments(self) -> None:
        """Test several bare assignments on one line."""
        assert parse_environment_line("Environment=A=1 B=2") == [("A", "1"), ("B", "2")]

    def test_not_environment(self) -> None:
        """Test other directives yield nothing."""
        assert parse_environment_line("ExecStart=/bin/true") == []
        assert not is_environment_line("ExecStart=/bin/true")

    def test_unbalanced_quotes(self) -> None:
        """Test an unparsable line yields nothing instead of raising."""
        assert parse_environment_line('Environment="A=1') == []

    def test_later_assignment_wins(self) -> None:
        """Test environment_assignments keeps the last value of a key."""
        text = 'Environment="A=1"\nEnvironment="A=2"\n'
        assert environment_assignments(text) == {"A": "2"}


# =============================================================================
# Extraction
# =============================================================================


class TestExtractCustomEnvironment:
    """Tests for extract_custom_environment()."""

    def test_generated_unit_has_no_customisations(self) -> None:
        """Test a pristine unit yields no custom lines."""
        assert extract_custom_environment(GENERATED_UNIT) == []

    def test_added_and_changed_lines(self) -> None:
        """Test new keys and changed default values are both custom."""
        live = GENERATED_UNIT.replace(
            'Environment="USB_STABILIZATION_DELAY=10"',
            'Environment="USB_STABILIZATION_DELAY=30"\nEnvironment="MEDIAMTX_RTSP_PORT=8654"',
        )

        assert extract_custom_environment(live) == [
            'Environment="USB_STABILIZATION_DELAY=30"',
            'Environment="MEDIAMTX_RTSP_PORT=8654"',
        ]

    def test_duplicates_removed(self) -> None:
        """Test identical custom lines are reported once."""
        live = GENERATED_UNIT + '  Environment="X=1"\nEnvironment="X=1"\n'

        assert extract_custom_environment(live) == ['Environment="X=1"']

    def test_custom_defaults_table(self) -> None:
        """Test a caller-supplied defaults table is honoured."""
        assert extract_custom_environment('Environment="A=1"', {"A": "1"}) == []


# =============================================================================
# Splicing
# =============================================================================


class TestSpliceCustomEnvironment:
    """Tests for splice_custom_environment()."""

    def test_inserted_after_last_environment_line(self) -> None:
        """Test custom lines follow the generated Environment block."""
        result = splice_custom_environment(
            GENERATED_UNIT, ['Environment="MEDIAMTX_RTSP_PORT=8654"']
        )

        lines = result.splitlines()
        index = lines.index('Environment="MEDIAMTX_RTSP_PORT=8654"')
        assert lines[index - 1] == 'Environment="MEDIAMTX_STREAM_MODE=individual"'
        assert lines[index + 1].startswith("ExecStart=")
        assert result.endswith("\n")

    def test_generated_lines_untouched(self) -> None:
        """Test removing the spliced line gives back the generated unit."""
        custom = 'Environment="USB_STABILIZATION_DELAY=30"'
        result = splice_custom_environment(GENERATED_UNIT, [custom])

        assert result.replace(custom + "\n", "") == GENERATED_UNIT

    def test_nothing_to_splice(self) -> None:
        """Test the unit is returned unchanged without customisations."""
        assert splice_custom_environment(GENERATED_UNIT, []) == GENERATED_UNIT

    def test_already_present_line_skipped(self) -> None:
        """Test a custom line the generator now emits is not duplicated."""
        result = splice_custom_environment(GENERATED_UNIT, ['Environment="HOME=/root"'])

        assert result == GENERATED_UNIT

    def test_after_service_header_without_environment(self) -> None:
        """Test lines go right after [Service] when there is no Environment."""
        unit = "[Service]\nExecStart=/bin/true\n"

        result = splice_custom_environment(unit, ['Environment="A=1"'])

        assert result == '[Service]\nEnvironment="A=1"\nExecStart=/bin/true\n'

    def test_service_section_created(self) -> None:
        """Test a [Service] section is opened when the unit has none."""
        result = splice_custom_environment("[Unit]\nDescription=x\n", ['Environment="A=1"'])

        assert result.splitlines()[-2:] == ["[Service]", 'Environment="A=1"']
