"""
Tests for display helpers in utils.py.
"""

from rich.console import Console, Group
from rich.syntax import Syntax
from rich.text import Text

from cellpad.coordinator import ExecutionRecord, RecordStatus
from cellpad.segmenter import segment
from cellpad.utils import (
    cell_title,
    format_duration,
    format_error,
    format_record,
    format_result,
    format_rich_output,
    get_cell_status,
    truncate_text,
)


def render(renderable) -> str:
    console = Console(width=100, record=True, color_system=None)
    console.print(renderable)
    return console.export_text()


class TestGetCellStatus:
    def test_no_record(self):
        assert get_cell_status(None) == ("--", "dim")

    def test_pending(self):
        assert get_cell_status(ExecutionRecord(cell_index=0)) == ("--", "dim")

    def test_running(self):
        record = ExecutionRecord(cell_index=0, status=RecordStatus.RUNNING)
        assert get_cell_status(record) == ("run", "yellow")

    def test_succeeded(self):
        record = ExecutionRecord(cell_index=0, status=RecordStatus.SUCCEEDED)
        assert get_cell_status(record) == ("ok", "green")

    def test_failed(self):
        record = ExecutionRecord(cell_index=0, status=RecordStatus.FAILED, error_kind="KeyError")
        assert get_cell_status(record) == ("err", "red")

    def test_interrupted(self):
        record = ExecutionRecord(cell_index=0, status=RecordStatus.FAILED, error_kind="Interrupted")
        assert get_cell_status(record) == ("int", "magenta")


class TestFormatOutput:
    def test_rich_stdout(self):
        text = format_rich_output({"name": "stdout", "text": "hi\n"})
        assert isinstance(text, Text)
        assert text.plain == "hi"

    def test_rich_stderr_is_yellow(self):
        text = format_rich_output({"name": "stderr", "text": "careful\n"})
        assert text.style == "yellow"

    def test_result_is_python_syntax(self):
        syntax = format_result("{'a': 1}")
        assert isinstance(syntax, Syntax)
        assert syntax.code == "{'a': 1}"


class TestFormatRecord:
    def test_nothing_to_show(self):
        assert format_record(ExecutionRecord(cell_index=0, status=RecordStatus.SUCCEEDED)) is None

    def test_output_and_result(self):
        record = ExecutionRecord(
            cell_index=0, status=RecordStatus.SUCCEEDED,
            outputs=[{"name": "stdout", "text": "loading\n"}], result="[1, 2]",
        )
        group = format_record(record)
        assert isinstance(group, Group)
        text = render(group)
        assert "loading" in text
        assert "[1, 2]" in text

    def test_error(self):
        record = ExecutionRecord(
            cell_index=0, status=RecordStatus.FAILED, error_kind="ValueError",
            error_message="bad value", traceback=["Traceback (most recent call last):", "ValueError: bad value"],
        )
        text = render(format_record(record))
        assert "ValueError: bad value" in text
        assert "Traceback" in text

    def test_format_error_without_message(self):
        record = ExecutionRecord(cell_index=0, status=RecordStatus.FAILED)
        assert format_error(record).plain == "Error"


class TestHelpers:
    def test_cell_title_uses_label(self):
        cells = segment("x = 1\n# %% load data\nimport csv\n")
        assert cell_title(cells[1]) == "load data"

    def test_cell_title_uses_first_code_line(self):
        cells = segment("\n\n  total = 1\nmore = 2\n")
        assert cell_title(cells[0]) == "total = 1"

    def test_cell_title_empty(self):
        cells = segment("# %%\n\n")
        assert cell_title(cells[1]) == "(empty)"

    def test_truncate_text(self):
        assert truncate_text("short", 10) == "short"
        assert truncate_text("a" * 20, 10) == "aaaaaaa..."

    def test_format_duration(self):
        assert format_duration(None) == ""
        assert format_duration(0.0421) == "42ms"
        assert format_duration(2.345) == "2.3s"
