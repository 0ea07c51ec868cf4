"""
ContextDetector: classify the cursor position inside a cell.

The detector runs a small lexer over the text before the cursor. It tracks
string literals (quote, prefix, escapes), f-string interpolations and the
stack of open brackets together with the callee in front of each ``(``.
It knows nothing else about Python syntax: anything it cannot classify
confidently comes back as an ambiguous Plain context, which gets no
completions.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

from cellpad.config import DEFAULT_SQL_METHODS

_IDENT_TAIL = re.compile(r"\w*$")
_CALLEE_TAIL = re.compile(r"[\w.]*$")
_STRING_PREFIX = set("rRbBfFuU")
_PREFIXED_QUOTE = re.compile(r"[rRbBfFuU]{1,3}['\"]")
_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}


class ContextKind(str, Enum):
    PLAIN = "plain"
    SQL_ARGUMENT = "sql_argument"
    METHOD_CHAIN = "method_chain"


class CursorContext(BaseModel):
    """Where the cursor is, and what completion needs to know about it."""
    model_config = ConfigDict(frozen=True)

    kind: ContextKind = ContextKind.PLAIN
    prefix: str = ""
    sql: str = ""
    receiver: str = ""
    callee: str = ""
    ambiguous: bool = False

    @property
    def is_sql(self) -> bool:
        return self.kind == ContextKind.SQL_ARGUMENT

    @property
    def is_method_chain(self) -> bool:
        return self.kind == ContextKind.METHOD_CHAIN


AMBIGUOUS = CursorContext(ambiguous=True)


class _Malformed(Exception):
    pass


@dataclass
class _Bracket:
    char: str
    callee: Optional[str] = None
    # literal text of adjacent string arguments, joined by implicit concatenation
    strings: list[str] = field(default_factory=list)
    after_string: bool = False


@dataclass
class _Code:
    brackets: list[_Bracket] = field(default_factory=list)
    interpolation: bool = False
    format_spec: bool = False


@dataclass
class _String:
    quote: str
    fstring: bool
    piece_start: int
    pieces: list[str] = field(default_factory=list)


def is_sql_callee(callee: Optional[str], sql_methods: Iterable[str] = DEFAULT_SQL_METHODS) -> bool:
    """True for ``obj.method`` spellings whose method is a recognized SQL entry point."""
    if not callee or "." not in callee:
        return False
    return callee.rsplit(".", 1)[1] in set(sql_methods)


def _string_prefix(src: str, quote_at: int) -> str:
    j = quote_at
    while j > 0 and quote_at - j < 3 and src[j - 1] in _STRING_PREFIX:
        j -= 1
    if j > 0 and (src[j - 1].isalnum() or src[j - 1] == "_"):
        return ""
    return src[j:quote_at]


def _callee_before(src: str, paren_at: int) -> Optional[str]:
    head = src[:paren_at].rstrip()
    name = _CALLEE_TAIL.search(head).group(0)
    return name or None


class _Scanner:
    """Single forward pass over the text before the cursor."""

    def __init__(self, src: str):
        self.src = src
        self.frames: list = [_Code()]
        # close bracket index -> open bracket index, for code brackets only
        self.pairs: dict[int, int] = {}
        # index just past a closing quote -> index where the literal starts
        self.string_spans: dict[int, int] = {}
        self._open_at: list[int] = []
        self._string_start: list[int] = []

    @property
    def top(self):
        return self.frames[-1]

    def code_frame(self) -> _Code:
        for frame in reversed(self.frames):
            if isinstance(frame, _Code):
                return frame
        raise _Malformed()

    def run(self):
        i, n = 0, len(self.src)
        while i < n:
            if isinstance(self.top, _String):
                i = self._in_string(i)
            else:
                i = self._in_code(i)

    def _in_code(self, i: int) -> int:
        src, frame = self.src, self.top
        c = src[i]
        if frame.format_spec:
            if c == "{":
                self.frames.append(_Code(interpolation=True))
            elif c == "}":
                self._close_interpolation(i)
            return i + 1
        if c == "#" and not frame.interpolation:
            end = src.find("\n", i)
            if end == -1:
                # cursor sits in a comment
                raise _Malformed()
            return end
        if c in "'\"":
            return self._open_string(i)
        if c in _OPENERS:
            callee = _callee_before(src, i) if c == "(" else None
            frame.brackets.append(_Bracket(char=c, callee=callee))
            self._open_at.append(i)
            return i + 1
        if c in _CLOSERS:
            if frame.interpolation and c == "}" and not frame.brackets:
                self._close_interpolation(i)
                return i + 1
            if not frame.brackets or frame.brackets[-1].char != _CLOSERS[c]:
                raise _Malformed()
            frame.brackets.pop()
            self.pairs[i] = self._open_at.pop()
            self._mark_not_string(frame)
            return i + 1
        if frame.interpolation and not frame.brackets:
            if c == "!" and src[i + 1:i + 2] != "=":
                frame.format_spec = True
            elif c == ":" and src[i + 1:i + 2] != "=":
                frame.format_spec = True
        if c == ",":
            if frame.brackets:
                frame.brackets[-1].strings = []
                frame.brackets[-1].after_string = False
        elif not c.isspace() and not _PREFIXED_QUOTE.match(src, i):
            self._mark_not_string(frame)
        return i + 1

    @staticmethod
    def _mark_not_string(frame: _Code):
        if frame.brackets:
            bracket = frame.brackets[-1]
            if bracket.after_string:
                bracket.after_string = False
                bracket.strings = []

    def _open_string(self, i: int) -> int:
        src = self.src
        c = src[i]
        prefix = _string_prefix(src, i)
        quote = c * 3 if src[i:i + 3] == c * 3 else c
        start = i + len(quote)
        self.frames.append(_String(quote=quote, fstring="f" in prefix.lower(), piece_start=start))
        self._string_start.append(i - len(prefix))
        return start

    def _in_string(self, i: int) -> int:
        src, s = self.src, self.top
        c = src[i]
        if c == "\\":
            return i + 2
        if s.fstring and c == "{":
            if src[i + 1:i + 2] == "{":
                return i + 2
            s.pieces.append(src[s.piece_start:i])
            self.frames.append(_Code(interpolation=True))
            return i + 1
        if s.fstring and c == "}" and src[i + 1:i + 2] == "}":
            return i + 2
        if src.startswith(s.quote, i):
            s.pieces.append(src[s.piece_start:i])
            self.frames.pop()
            end = i + len(s.quote)
            self.string_spans[end] = self._string_start.pop()
            frame = self.code_frame()
            if frame.brackets:
                bracket = frame.brackets[-1]
                if not bracket.after_string:
                    bracket.strings = []
                bracket.strings.append("".join(s.pieces))
                bracket.after_string = True
            return end
        if c == "\n" and len(s.quote) == 1:
            # unterminated single-line string
            raise _Malformed()
        return i + 1

    def _close_interpolation(self, i: int):
        self.frames.pop()
        if not self.frames:
            raise _Malformed()
        if isinstance(self.top, _String):
            self.top.piece_start = i + 1
        elif not self.top.format_spec:
            raise _Malformed()


def _receiver_before(scanner: _Scanner, dot: int) -> str:
    """Expression text ending right before the ``.`` at index ``dot``."""
    src = scanner.src
    j = dot
    while j > 0:
        ch = src[j - 1]
        if ch.isalnum() or ch in "_.":
            j -= 1
        elif ch in ")]":
            opened = scanner.pairs.get(j - 1)
            if opened is None:
                raise _Malformed()
            j = opened
        elif ch in "'\"" and j in scanner.string_spans:
            j = scanner.string_spans[j]
            break
        else:
            break
    receiver = src[j:dot]
    if not receiver or receiver[0] == "." or receiver[0].isdigit() or ".." in receiver:
        raise _Malformed()
    return receiver


def classify(
    cell_text: str,
    cursor_offset: int,
    sql_methods: Iterable[str] = DEFAULT_SQL_METHODS,
) -> CursorContext:
    """
    Classify the cursor position in a cell.

    Args:
        cell_text: Source of the cell the cursor is in
        cursor_offset: Cursor position, relative to the start of cell_text
        sql_methods: Method names whose string arguments are SQL

    Returns:
        CursorContext; ambiguous input yields an ambiguous Plain context
    """
    if cursor_offset < 0 or cursor_offset > len(cell_text):
        return AMBIGUOUS
    src = cell_text[:cursor_offset]
    scanner = _Scanner(src)
    try:
        scanner.run()
        top = scanner.top

        if isinstance(top, _String):
            frame = scanner.code_frame()
            bracket = frame.brackets[-1] if frame.brackets else None
            if bracket is None or bracket.char != "(" or not is_sql_callee(bracket.callee, sql_methods):
                return AMBIGUOUS
            joined = "".join(bracket.strings) if bracket.after_string else ""
            sql = joined + "".join(top.pieces) + src[top.piece_start:]
            return CursorContext(
                kind=ContextKind.SQL_ARGUMENT,
                prefix=_IDENT_TAIL.search(sql).group(0),
                sql=sql,
                callee=bracket.callee,
            )

        if top.format_spec:
            return AMBIGUOUS

        prefix = _IDENT_TAIL.search(src).group(0)
        if prefix[:1].isdigit():
            return AMBIGUOUS
        dot = len(src) - len(prefix) - 1
        if dot >= 0 and src[dot] == ".":
            receiver = _receiver_before(scanner, dot)
            return CursorContext(kind=ContextKind.METHOD_CHAIN, prefix=prefix, receiver=receiver)
        return CursorContext(kind=ContextKind.PLAIN, prefix=prefix)
    except _Malformed:
        return AMBIGUOUS
