"""
CellSegmenter: splits a document into cells at delimiter lines.

A delimiter line is a line whose stripped content starts with the delimiter
token, optionally followed by whitespace and a free-text label::

    # %% load data
    import duckdb

Detection is purely lexical. A delimiter inside a string literal still starts
a new cell.
"""

from typing import Optional

from pydantic import BaseModel

DEFAULT_DELIMITER = "# %%"


class Cell(BaseModel):
    """A contiguous range of the document, delimiter line included."""
    index: int
    start: int
    end: int
    source: str
    label: str = ""
    has_delimiter: bool = False

    @property
    def body_offset(self) -> int:
        """Length of the delimiter line (with its newline), 0 if there is none."""
        if not self.has_delimiter:
            return 0
        newline = self.source.find("\n")
        return len(self.source) if newline == -1 else newline + 1

    @property
    def body(self) -> str:
        """Code sent to the kernel: the source without its delimiter line."""
        return self.source[self.body_offset:]

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "label": self.label,
            "source": self.source,
        }


def parse_delimiter(line: str, delimiter: str = DEFAULT_DELIMITER) -> Optional[str]:
    """
    Check whether a line is a delimiter line.

    Args:
        line: A single line, with or without its trailing newline
        delimiter: The delimiter token

    Returns:
        The label text ("" when there is none), or None if the line is not a delimiter
    """
    stripped = line.strip()
    if not stripped.startswith(delimiter):
        return None
    rest = stripped[len(delimiter):]
    if rest and not rest[0].isspace():
        # "# %%%" or "# %%foo" are not delimiters
        return None
    return rest.strip()


def _lines(document: str):
    """Lines ending at each line feed, which stays attached. Other line breaks do not split."""
    start = 0
    while start < len(document):
        end = document.find("\n", start)
        end = len(document) if end == -1 else end + 1
        yield document[start:end]
        start = end


def segment(document: str, delimiter: str = DEFAULT_DELIMITER) -> list[Cell]:
    """
    Split document text into ordered cells.

    Text before the first delimiter line forms cell 0, so a document with N
    delimiter lines yields N + 1 cells. The ranges are contiguous and cover the
    whole document.

    Args:
        document: Full document text
        delimiter: The delimiter token

    Returns:
        Cells in source order
    """
    boundaries: list[tuple[int, str]] = []
    offset = 0
    for line in _lines(document):
        label = parse_delimiter(line, delimiter)
        if label is not None:
            boundaries.append((offset, label))
        offset += len(line)

    cells = []
    starts = [(0, "", False)] + [(pos, label, True) for pos, label in boundaries]
    for i, (start, label, has_delimiter) in enumerate(starts):
        end = starts[i + 1][0] if i + 1 < len(starts) else len(document)
        cells.append(Cell(
            index=i,
            start=start,
            end=end,
            source=document[start:end],
            label=label,
            has_delimiter=has_delimiter,
        ))
    return cells


def join(cells: list[Cell]) -> str:
    """Reassemble the document from its cells."""
    return "".join(cell.source for cell in cells)


def cell_at_offset(cells: list[Cell], offset: int) -> Optional[Cell]:
    """
    Find the cell containing a document offset.

    An offset equal to the document length belongs to the last cell.
    """
    if not cells or offset < 0:
        return None
    for cell in cells:
        if cell.contains(offset):
            return cell
    last = cells[-1]
    if offset == last.end:
        return last
    return None
