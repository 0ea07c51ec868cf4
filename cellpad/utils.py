"""
Utility functions for cellpad.
"""

from typing import Any, Optional

from rich.console import Group
from rich.syntax import Syntax
from rich.text import Text

from cellpad.coordinator import ExecutionRecord, RecordStatus
from cellpad.segmenter import Cell


def format_rich_output(output: dict[str, Any]):
    """
    Format a stream output as a Rich renderable.

    Args:
        output: Output dictionary from an ExecutionRecord

    Returns:
        Rich renderable object for console display
    """
    text = output.get("text", "")
    if output.get("name") == "stderr":
        return Text(text.rstrip("\n"), style="yellow")
    return Text(text.rstrip("\n"))


def format_result(result: str):
    """Value of the cell's last expression, highlighted as Python."""
    return Syntax(result, "python", theme="monokai", line_numbers=False, word_wrap=True)


def format_error(record: ExecutionRecord) -> Text:
    """Error kind, message and traceback of a failed record."""
    error_text = Text()
    error_text.append(f"{record.error_kind or 'Error'}", style="bold red")
    if record.error_message:
        error_text.append(f": {record.error_message}", style="red")
    for tb_line in record.traceback:
        if isinstance(tb_line, str):
            error_text.append(f"\n{tb_line.rstrip()}", style="dim red")
    return error_text


def format_record(record: ExecutionRecord) -> Optional[Group]:
    """
    Everything a record has to show: stream output, the result, the error.

    Returns:
        Rich Group, or None if the record has nothing to display
    """
    parts = [format_rich_output(o) for o in record.outputs if o.get("text")]
    if record.result is not None:
        parts.append(format_result(record.result))
    if record.failed:
        parts.append(format_error(record))
    return Group(*parts) if parts else None


def get_cell_status(record: Optional[ExecutionRecord]) -> tuple[str, str]:
    """
    Get status indicator and style for a cell's record.

    Returns:
        Tuple of (indicator_string, rich_style)
    """
    if record is None or record.status == RecordStatus.PENDING:
        return ("--", "dim")
    if record.status == RecordStatus.RUNNING:
        return ("run", "yellow")
    if record.interrupted:
        return ("int", "magenta")
    if record.failed:
        return ("err", "red")
    return ("ok", "green")


def cell_title(cell: Cell) -> str:
    """Short label for a cell: its delimiter label or its first code line."""
    if cell.label:
        return cell.label
    for line in cell.body.splitlines():
        if line.strip():
            return truncate_text(line.strip(), 50)
    return "(empty)"


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return ""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.1f}s"
