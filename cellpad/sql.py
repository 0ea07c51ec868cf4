"""
Minimal SQL lexer used to locate the cursor inside a partial query.

It recognizes words, quoted identifiers, string literals, numbers, comments
and punctuation, which is enough to tell "a table name goes here" from "a
column goes here" from "a column of this table goes here".
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

SQL_KEYWORDS = (
    "SELECT", "FROM", "WHERE", "AND", "OR", "NOT", "IN", "EXISTS",
    "JOIN", "LEFT", "RIGHT", "INNER", "OUTER", "FULL", "CROSS", "ON", "USING",
    "GROUP", "BY", "HAVING", "ORDER", "ASC", "DESC", "LIMIT", "OFFSET",
    "INSERT", "INTO", "VALUES", "UPDATE", "SET", "DELETE", "TRUNCATE",
    "CREATE", "ALTER", "DROP", "TABLE", "VIEW", "INDEX", "DATABASE", "SCHEMA",
    "AS", "DISTINCT", "ALL", "UNION", "INTERSECT", "EXCEPT",
    "CASE", "WHEN", "THEN", "ELSE", "END",
    "IS", "NULL", "BETWEEN", "LIKE", "ILIKE", "SIMILAR", "TO",
    "WITH", "RECURSIVE", "OVER", "PARTITION", "WINDOW", "QUALIFY",
    "INTEGER", "INT", "BIGINT", "SMALLINT", "DECIMAL", "NUMERIC",
    "FLOAT", "DOUBLE", "REAL", "VARCHAR", "CHAR", "TEXT",
    "DATE", "TIME", "TIMESTAMP", "INTERVAL", "BOOLEAN",
    "JSON", "ARRAY", "STRUCT", "MAP", "TRUE", "FALSE", "IF",
    "PRIMARY", "KEY", "REFERENCES", "DEFAULT", "REPLACE", "DESCRIBE", "SHOW",
)

SQL_FUNCTIONS = (
    "ABS", "ARRAY_AGG", "AVG", "BOOL_AND", "BOOL_OR", "CAST", "COALESCE",
    "CONCAT", "COUNT", "DATE_TRUNC", "DENSE_RANK", "EXTRACT", "FIRST_VALUE",
    "IFNULL", "LAG", "LAST_VALUE", "LEAD", "LENGTH", "LOWER", "MAX", "MIN",
    "NOW", "NULLIF", "RANK", "ROUND", "ROW_NUMBER", "STDDEV", "STRING_AGG",
    "SUBSTRING", "SUM", "TRIM", "TRY_CAST", "UPPER", "VARIANCE",
)

_KEYWORD_SET = frozenset(SQL_KEYWORDS)

TABLE_KEYWORDS = frozenset({"FROM", "JOIN", "INTO", "UPDATE", "TABLE", "DESCRIBE"})
COLUMN_KEYWORDS = frozenset({
    "SELECT", "WHERE", "ON", "BY", "HAVING", "SET", "AND", "OR", "NOT", "WHEN",
    "THEN", "ELSE", "CASE", "DISTINCT", "QUALIFY", "USING", "IN", "BETWEEN",
    "LIKE", "ILIKE", "IS", "ALL",
})
# clause keywords that a comma-separated list belongs to
_CLAUSE_KEYWORDS = frozenset({"SELECT", "FROM", "BY", "SET", "VALUES", "INTO", "WHERE", "HAVING"})

_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<line_comment>--[^\n]*(\n|$))
  | (?P<block_comment>/\*.*?(\*/|$))
  | (?P<string>'(?:[^']|'')*('|$))
  | (?P<quoted>"(?:[^"]|"")*("|$))
  | (?P<number>\d+(?:\.\d*)?)
  | (?P<word>[A-Za-z_][A-Za-z0-9_$]*)
  | (?P<param>[?]|\$\d+|:[A-Za-z_]\w*)
  | (?P<punct>[.,();*])
  | (?P<op>[=<>!+\-/%|&^~:]+)
  | (?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)


class SqlPosition(str, Enum):
    """What kind of name the cursor position expects."""
    START = "start"
    TABLE = "table"
    COLUMN = "column"
    QUALIFIED = "qualified"
    NONE = "none"


@dataclass
class Token:
    kind: str
    text: str
    depth: int = 0

    @property
    def upper(self) -> str:
        return self.text.upper()

    @property
    def is_keyword(self) -> bool:
        return self.kind == "word" and self.upper in _KEYWORD_SET

    @property
    def name(self) -> str:
        """Identifier text with quoting removed."""
        if self.kind == "quoted":
            return self.text[1:-1].replace('""', '"')
        return self.text


@dataclass
class SqlSituation:
    """Result of analyzing a partial query."""
    position: SqlPosition
    prefix: str = ""
    qualifier: Optional[str] = None
    aliases: dict[str, str] = field(default_factory=dict)
    tables: list[str] = field(default_factory=list)


def tokenize(sql: str) -> tuple[list[Token], bool]:
    """
    Split SQL into tokens, dropping whitespace and comments.

    Returns:
        (tokens, open_literal) where open_literal is True if the text ends
        inside a string literal, quoted identifier or comment
    """
    tokens: list[Token] = []
    depth = 0
    open_literal = False
    for match in _TOKEN.finditer(sql):
        kind = match.lastgroup
        text = match.group(0)
        open_literal = False
        if kind == "space":
            continue
        if kind == "line_comment":
            open_literal = not text.endswith("\n")
            continue
        if kind == "block_comment":
            open_literal = not text.endswith("*/") or len(text) < 4
            continue
        if kind in ("string", "quoted"):
            quote = text[0]
            body = text[1:]
            # closed when the body ends in an odd run of quotes
            run = len(body) - len(body.rstrip(quote))
            open_literal = run % 2 == 0
        if kind == "punct" and text == ")":
            depth = max(0, depth - 1)
        tokens.append(Token(kind=kind, text=text, depth=depth))
        if kind == "punct" and text == "(":
            depth += 1
    return tokens, open_literal


def _is_name(token: Token) -> bool:
    return (token.kind == "word" and not token.is_keyword) or token.kind == "quoted"


def find_aliases(tokens: list[Token]) -> tuple[dict[str, str], list[str]]:
    """
    Collect tables named after FROM/JOIN (and in FROM comma lists) and their aliases.

    Returns:
        (alias -> table, tables in order of appearance); alias keys are lowercase
    """
    aliases: dict[str, str] = {}
    tables: list[str] = []
    i = 0
    in_from = False
    while i < len(tokens):
        token = tokens[i]
        upper = token.upper if token.kind == "word" else ""
        if upper in ("FROM", "JOIN", "UPDATE", "INTO"):
            in_from = upper == "FROM"
            i += 1
            i = _read_table_ref(tokens, i, aliases, tables)
            continue
        if in_from and token.kind == "punct" and token.text == ",":
            i = _read_table_ref(tokens, i + 1, aliases, tables)
            continue
        if token.kind == "word" and token.is_keyword and upper not in ("AS",):
            in_from = False
        i += 1
    return aliases, tables


def _read_table_ref(tokens: list[Token], i: int, aliases: dict[str, str], tables: list[str]) -> int:
    if i >= len(tokens) or not _is_name(tokens[i]):
        return i
    parts = [tokens[i].name]
    i += 1
    # schema-qualified name
    while i + 1 < len(tokens) and tokens[i].text == "." and _is_name(tokens[i + 1]):
        parts.append(tokens[i + 1].name)
        i += 2
    table = ".".join(parts)
    tables.append(table)
    aliases.setdefault(table.lower(), table)
    aliases.setdefault(parts[-1].lower(), table)
    if i < len(tokens) and tokens[i].upper == "AS":
        i += 1
    if i < len(tokens) and _is_name(tokens[i]):
        aliases[tokens[i].name.lower()] = table
        i += 1
    return i


def _governing_clause(tokens: list[Token], end: int) -> Optional[str]:
    """Nearest clause keyword before ``end`` at the same parenthesis depth."""
    depth = tokens[end].depth if end < len(tokens) else (tokens[-1].depth if tokens else 0)
    for token in reversed(tokens[:end]):
        if token.depth < depth:
            return None
        if token.depth == depth and token.kind == "word" and token.upper in _CLAUSE_KEYWORDS:
            return token.upper
    return None


def analyze(sql: str) -> SqlSituation:
    """
    Work out what the cursor at the end of ``sql`` expects.

    Args:
        sql: Query text from the start of the literal up to the cursor

    Returns:
        SqlSituation with the position, the partial word and alias information
    """
    tokens, open_literal = tokenize(sql)
    if open_literal:
        return SqlSituation(position=SqlPosition.NONE)

    prefix = ""
    if tokens and tokens[-1].kind == "word" and sql.endswith(tokens[-1].text):
        prefix = tokens[-1].text
        tokens = tokens[:-1]
    aliases, tables = find_aliases(tokens)

    if not tokens:
        return SqlSituation(position=SqlPosition.START, prefix=prefix, aliases=aliases, tables=tables)

    last = tokens[-1]
    if last.kind == "punct" and last.text == "." and len(tokens) >= 2 and _is_name(tokens[-2]):
        return SqlSituation(
            position=SqlPosition.QUALIFIED,
            prefix=prefix,
            qualifier=tokens[-2].name,
            aliases=aliases,
            tables=tables,
        )
    if last.kind == "punct" and last.text == ".":
        return SqlSituation(position=SqlPosition.NONE)
    if last.kind in ("string", "number", "param") and prefix:
        # 'abc'x or 12x: not a name position
        return SqlSituation(position=SqlPosition.NONE)

    position = SqlPosition.COLUMN
    if last.kind == "word" and last.upper in TABLE_KEYWORDS:
        position = SqlPosition.TABLE
    elif last.kind == "punct" and last.text == ",":
        if _governing_clause(tokens, len(tokens) - 1) == "FROM":
            position = SqlPosition.TABLE
    return SqlSituation(position=position, prefix=prefix, aliases=aliases, tables=tables)
