"""
CompletionProvider: turn a CursorContext into ranked candidates.

SQL strings complete against the SchemaCatalog, method chains against the
NamespaceSnapshot plus capability profiles, and everything else against
Python keywords, builtins and the kernel's global names. An empty list is a
normal answer.
"""

import builtins
import keyword
import logging
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

from cellpad.config import DEFAULT_SQL_METHODS
from cellpad.context import ContextKind, CursorContext, classify
from cellpad.namespace import NamespaceSnapshot, SnapshotStore, SymbolInfo
from cellpad.profiles import UNKNOWN, module_profile, profile_for
from cellpad.schema import SchemaCatalog
from cellpad.segmenter import DEFAULT_DELIMITER, cell_at_offset, segment
from cellpad.sql import SQL_FUNCTIONS, SQL_KEYWORDS, SqlPosition, analyze

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
PYTHON_KEYWORDS = tuple(keyword.kwlist)
PYTHON_BUILTINS = tuple(n for n in dir(builtins) if not n.startswith("_"))


class Category(str, Enum):
    TABLE = "table"
    COLUMN = "column"
    KEYWORD = "keyword"
    FUNCTION = "function"
    SYMBOL = "symbol"
    ATTRIBUTE = "attribute"


_SQL_PRIORITY = {Category.TABLE: 0, Category.COLUMN: 0, Category.FUNCTION: 1, Category.KEYWORD: 2}
_PLAIN_PRIORITY = {Category.SYMBOL: 0, Category.FUNCTION: 1, Category.KEYWORD: 2}


class CompletionCandidate(BaseModel):
    """One completion: the text to insert and what kind of name it is."""
    model_config = ConfigDict(frozen=True)

    text: str
    category: Category
    detail: str = ""


def rank(candidates: Iterable[CompletionCandidate], priority: dict,
         case_insensitive: bool = True) -> list[CompletionCandidate]:
    """
    Sort by category priority, then alphabetically, dropping duplicates.

    Args:
        candidates: Unordered candidates
        priority: Category -> rank, lower first
        case_insensitive: Treat names differing only in case as duplicates

    Returns:
        Sorted candidates; of two duplicates the better-ranked one is kept
    """
    ordered = sorted(
        candidates,
        key=lambda c: (priority.get(c.category, len(priority)), c.text.lower(), c.text),
    )
    seen = set()
    result = []
    for candidate in ordered:
        key = candidate.text.lower() if case_insensitive else candidate.text
        if key in seen:
            continue
        seen.add(key)
        result.append(candidate)
    return result


# Receiver resolution. A step is ("name", text), ("attr", text), ("call", None)
# or ("item", None); the walk state is (kind, type tag, symbol).

def split_chain(receiver: str) -> Optional[list[tuple[str, Optional[str]]]]:
    """
    Split a receiver expression like ``db.sql("...").filter(x)`` into steps.

    Returns:
        List of steps, or None if the text is not a simple chain
    """
    steps: list[tuple[str, Optional[str]]] = []
    i, n = 0, len(receiver)
    if i < n and receiver[i] in "'\"" or receiver[:2].lower() in _STRING_OPENERS:
        end = _skip_string(receiver, i)
        if end is None:
            return None
        steps.append(("literal", "str"))
        i = end
    else:
        j = _read_ident(receiver, i)
        if j == i:
            return None
        steps.append(("name", receiver[i:j]))
        i = j
    while i < n:
        c = receiver[i]
        if c == ".":
            j = _read_ident(receiver, i + 1)
            if j == i + 1:
                return None
            steps.append(("attr", receiver[i + 1:j]))
            i = j
        elif c in "([":
            end = _skip_brackets(receiver, i)
            if end is None:
                return None
            steps.append(("call" if c == "(" else "item", None))
            i = end
        else:
            return None
    return steps


_STRING_OPENERS = {p + q for p in ("r", "b", "f", "u") for q in ("'", '"')}


def _read_ident(text: str, i: int) -> int:
    j = i
    while j < len(text) and (text[j].isalnum() or text[j] == "_"):
        j += 1
    if j > i and text[i].isdigit():
        return i
    return j


def _skip_string(text: str, i: int) -> Optional[int]:
    while i < len(text) and text[i] not in "'\"":
        i += 1
    if i >= len(text):
        return None
    quote = text[i] * 3 if text[i:i + 3] == text[i] * 3 else text[i]
    j = i + len(quote)
    while j < len(text):
        if text[j] == "\\":
            j += 2
            continue
        if text.startswith(quote, j):
            return j + len(quote)
        j += 1
    return None


def _skip_brackets(text: str, i: int) -> Optional[int]:
    depth = 0
    j = i
    while j < len(text):
        c = text[j]
        if c in "'\"":
            end = _skip_string(text, j)
            if end is None:
                return None
            j = end
            continue
        if c in "([{":
            depth += 1
        elif c in ")]}":
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return None


def _start(step: tuple[str, Optional[str]], namespace: NamespaceSnapshot):
    kind, text = step
    if kind == "literal":
        return ("value", "str", None)
    symbol = namespace.get(text)
    if symbol is None:
        return ("value", UNKNOWN, None)
    if symbol.kind == "module":
        return ("module", "module", symbol)
    if symbol.kind in ("class", "function"):
        return (symbol.kind, symbol.type, symbol)
    return ("value", symbol.type, symbol)


def _attr(state, name: str):
    kind, tag, symbol = state
    if symbol is not None:
        if name in symbol.members:
            member = symbol.members[name]
            return ("value", member, None) if member != "module" else ("value", UNKNOWN, None)
        if name in symbol.returns:
            return ("method", symbol.returns[name], None)
    if kind == "module":
        profile = module_profile(symbol.module if symbol else None)
    elif kind == "value":
        profile = profile_for(tag)
    else:
        profile = None
    if profile is None:
        return ("value", UNKNOWN, None)
    if name in profile.attributes:
        return ("value", profile.returns.get(name, UNKNOWN), None)
    if name in profile.methods:
        return ("method", profile.returns.get(name, UNKNOWN), None)
    return ("value", UNKNOWN, None)


def _call(state):
    kind, tag, symbol = state
    if kind == "method":
        return ("value", tag, None)
    if kind in ("class", "function") and symbol is not None:
        return ("value", symbol.call_returns or UNKNOWN, None)
    return ("value", UNKNOWN, None)


def _item(state):
    kind, tag, _ = state
    profile = profile_for(tag) if kind == "value" else None
    if profile is not None and "__getitem__" in profile.returns:
        return ("value", profile.returns["__getitem__"], None)
    return ("value", UNKNOWN, None)


def resolve_receiver(receiver: str, namespace: NamespaceSnapshot):
    """
    Walk a receiver chain to the type of its final value.

    Returns:
        (kind, type tag, symbol); symbol is set only when the receiver is a
        bare name found in the snapshot
    """
    steps = split_chain(receiver)
    if not steps:
        return ("value", UNKNOWN, None)
    state = _start(steps[0], namespace)
    for step, text in steps[1:]:
        if state[1] == UNKNOWN and state[0] == "value":
            break
        if step == "attr":
            state = _attr(state, text)
        elif step == "call":
            state = _call(state)
        else:
            state = _item(state)
    return state


class CompletionProvider:
    """
    Context-aware completion over the current snapshots.

    The provider holds no state of its own beyond configuration; every call
    reads the SnapshotStore once and works on that pair of values.
    """

    def __init__(self, store: SnapshotStore, sql_methods: Iterable[str] = DEFAULT_SQL_METHODS,
                 limit: int = DEFAULT_LIMIT):
        self.store = store
        self.sql_methods = tuple(sql_methods)
        self.limit = limit

    def complete(self, cell_text: str, cursor_offset: int) -> list[CompletionCandidate]:
        """
        Complete at a cursor inside a cell.

        Args:
            cell_text: Source of the cell
            cursor_offset: Cursor position relative to the start of cell_text

        Returns:
            Ranked candidates, at most ``limit``; empty when nothing applies
        """
        context = classify(cell_text, cursor_offset, self.sql_methods)
        return self.complete_context(context)

    def complete_context(self, context: CursorContext) -> list[CompletionCandidate]:
        if context.ambiguous:
            return []
        namespace, catalog = self.store.snapshot()
        if context.kind == ContextKind.SQL_ARGUMENT:
            result = self._complete_sql(context.sql, catalog)
        elif context.kind == ContextKind.METHOD_CHAIN:
            result = self._complete_method_chain(context, namespace)
        else:
            result = self._complete_plain(context.prefix, namespace)
        logger.debug("%s completion for %r: %d candidates", context.kind.value,
                     context.prefix, len(result))
        return result[:self.limit]

    def complete_document(self, document: str, cursor_offset: int,
                          delimiter: str = DEFAULT_DELIMITER) -> list[CompletionCandidate]:
        """Complete at an offset into the whole document."""
        cells = segment(document, delimiter)
        cell = cell_at_offset(cells, cursor_offset)
        if cell is None:
            return []
        return self.complete(cell.source, cursor_offset - cell.start)

    def _complete_sql(self, sql: str, catalog: SchemaCatalog) -> list[CompletionCandidate]:
        situation = analyze(sql)
        if situation.position == SqlPosition.NONE:
            return []
        candidates: list[CompletionCandidate] = []

        if situation.position == SqlPosition.QUALIFIED:
            table = situation.aliases.get(situation.qualifier.lower(), situation.qualifier)
            candidates = [CompletionCandidate(text=c, category=Category.COLUMN, detail=table)
                          for c in catalog.columns(table)]
        else:
            functions = [CompletionCandidate(text=f, category=Category.FUNCTION)
                         for f in (*SQL_FUNCTIONS, *catalog.functions)]
            keywords = [CompletionCandidate(text=k, category=Category.KEYWORD) for k in SQL_KEYWORDS]
            tables = [CompletionCandidate(text=t, category=Category.TABLE)
                      for t in catalog.table_names()]
            if situation.position == SqlPosition.TABLE:
                candidates = tables + keywords
            else:
                candidates = self._sql_columns(situation.tables, catalog) + functions + keywords
                if situation.position == SqlPosition.START:
                    candidates += tables

        wanted = situation.prefix.lower()
        matches = [c for c in candidates if c.text.lower().startswith(wanted)]
        return rank(matches, _SQL_PRIORITY)

    @staticmethod
    def _sql_columns(tables: list[str], catalog: SchemaCatalog) -> list[CompletionCandidate]:
        known = [catalog.table(t) for t in tables]
        known = [t for t in known if t is not None]
        if known:
            return [CompletionCandidate(text=c, category=Category.COLUMN, detail=t.name)
                    for t in known for c in t.columns]
        return [CompletionCandidate(text=c, category=Category.COLUMN)
                for c in catalog.columns()]

    def _complete_method_chain(self, context: CursorContext,
                               namespace: NamespaceSnapshot) -> list[CompletionCandidate]:
        kind, tag, symbol = resolve_receiver(context.receiver, namespace)
        names: dict[str, str] = {}

        if kind == "module":
            profile = module_profile(symbol.module if symbol else None)
        elif kind == "value":
            profile = profile_for(tag)
        else:
            profile = None
        if profile is not None:
            for name in profile.methods:
                names[name] = "method"
            for name in profile.attributes:
                names[name] = profile.returns.get(name, "attribute")
        if symbol is not None:
            for name in symbol.attributes:
                if name in symbol.members:
                    names.setdefault(name, symbol.members[name])
                else:
                    names.setdefault(name, "method" if name in symbol.returns else "attribute")

        prefix = context.prefix
        show_private = prefix.startswith("_")
        candidates = [
            CompletionCandidate(text=name, category=Category.ATTRIBUTE, detail=detail)
            for name, detail in names.items()
            if name.startswith(prefix) and (show_private or not name.startswith("_"))
        ]
        return rank(candidates, {Category.ATTRIBUTE: 0}, case_insensitive=False)

    def _complete_plain(self, prefix: str, namespace: NamespaceSnapshot) -> list[CompletionCandidate]:
        if not prefix:
            return []
        candidates = [
            CompletionCandidate(text=name, category=Category.SYMBOL,
                                detail=_symbol_detail(namespace.get(name)))
            for name in namespace.names() if name.startswith(prefix)
        ]
        candidates += [CompletionCandidate(text=name, category=Category.FUNCTION, detail="builtin")
                       for name in PYTHON_BUILTINS if name.startswith(prefix)]
        candidates += [CompletionCandidate(text=name, category=Category.KEYWORD)
                       for name in PYTHON_KEYWORDS if name.startswith(prefix)]
        return rank(candidates, _PLAIN_PRIORITY, case_insensitive=False)


def _symbol_detail(symbol: Optional[SymbolInfo]) -> str:
    if symbol is None:
        return ""
    return symbol.type
