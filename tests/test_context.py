"""
Tests for cursor context classification.
"""

import pytest

from cellpad.context import ContextKind, classify, is_sql_callee


def at_end(text, **kwargs):
    return classify(text, len(text), **kwargs)


class TestPlainContext:
    def test_identifier_prefix(self):
        ctx = at_end("x = pri")
        assert ctx.kind == ContextKind.PLAIN
        assert ctx.prefix == "pri"
        assert not ctx.ambiguous

    def test_empty_prefix(self):
        ctx = at_end("x = ")
        assert ctx.kind == ContextKind.PLAIN
        assert ctx.prefix == ""

    def test_cursor_in_middle(self):
        text = "total = pri\nother = 1"
        ctx = classify(text, text.index("\n"))
        assert ctx.prefix == "pri"

    def test_closed_string_before_cursor(self):
        ctx = at_end('print("hello", en')
        assert ctx.kind == ContextKind.PLAIN
        assert ctx.prefix == "en"

    def test_comment_on_previous_line(self):
        ctx = at_end("# setup\nwhi")
        assert ctx.kind == ContextKind.PLAIN
        assert ctx.prefix == "whi"


class TestMethodChainContext:
    def test_simple_receiver(self):
        ctx = at_end("df.hea")
        assert ctx.kind == ContextKind.METHOD_CHAIN
        assert ctx.receiver == "df"
        assert ctx.prefix == "hea"

    def test_call_chain_receiver(self):
        ctx = at_end('rel = db.sql("SELECT 1").fi')
        assert ctx.is_method_chain
        assert ctx.receiver == 'db.sql("SELECT 1")'
        assert ctx.prefix == "fi"

    def test_subscript_receiver(self):
        ctx = at_end('df["amount"].')
        assert ctx.receiver == 'df["amount"]'
        assert ctx.prefix == ""

    def test_string_literal_receiver(self):
        ctx = at_end('"abc".up')
        assert ctx.receiver == '"abc"'

    def test_dotted_receiver(self):
        ctx = at_end("os.path.jo")
        assert ctx.receiver == "os.path"


class TestSqlContext:
    def test_sql_argument(self):
        ctx = at_end('db.sql("SELECT * FROM ord')
        assert ctx.kind == ContextKind.SQL_ARGUMENT
        assert ctx.sql == "SELECT * FROM ord"
        assert ctx.prefix == "ord"
        assert ctx.callee == "db.sql"

    def test_single_quotes(self):
        ctx = at_end("cur.execute('SELECT ")
        assert ctx.is_sql
        assert ctx.sql == "SELECT "
        assert ctx.prefix == ""

    def test_fstring_interpolation_is_excluded(self):
        ctx = at_end('db.sql(f"SELECT {x} FROM use')
        assert ctx.is_sql
        assert "{x}" not in ctx.sql
        assert "x" not in ctx.sql.replace("SELECT", "")
        assert ctx.prefix == "use"

    def test_implicit_concatenation(self):
        ctx = at_end('db.sql("SELECT * " "FROM ord')
        assert ctx.sql == "SELECT * FROM ord"

    def test_concatenation_broken_by_comma(self):
        ctx = at_end('db.execute("SELECT 1", "FROM ord')
        assert ctx.sql == "FROM ord"

    def test_triple_quoted(self):
        ctx = at_end('con.sql("""\nSELECT amount\nFROM ord')
        assert ctx.is_sql
        assert ctx.sql == "\nSELECT amount\nFROM ord"

    def test_raw_prefix(self):
        ctx = at_end('db.sql(r"SELECT * FROM ord')
        assert ctx.is_sql
        assert ctx.prefix == "ord"

    def test_keyword_argument_string(self):
        ctx = at_end('pd.read_sql(sql="SELECT * FROM ord')
        assert ctx.is_sql
        assert ctx.callee == "pd.read_sql"

    def test_non_sql_callee(self):
        ctx = at_end('print("SELECT * FROM ord')
        assert ctx.ambiguous

    def test_bare_function_call(self):
        assert at_end('sql("SELECT * FROM ord').ambiguous

    def test_string_outside_call(self):
        assert at_end('query = "SELECT * FROM ord').ambiguous

    def test_custom_sql_methods(self):
        text = 'engine.run_query("SELECT * FROM ord'
        assert at_end(text).ambiguous
        ctx = at_end(text, sql_methods=["run_query"])
        assert ctx.is_sql
        assert ctx.prefix == "ord"

    def test_nested_call_inside_sql_argument(self):
        ctx = at_end('db.sql(build("SELECT * FROM ord')
        assert ctx.ambiguous


class TestAmbiguousContext:
    @pytest.mark.parametrize("text", [
        "x = 1  # pri",
        "x = 1.",
        "foo(]",
        "x = 'unterminated\ny = pri",
        'f"{value:>1',
        "x = 12ab",
    ])
    def test_ambiguous(self, text):
        ctx = at_end(text)
        assert ctx.ambiguous
        assert ctx.kind == ContextKind.PLAIN

    @pytest.mark.parametrize("offset", [-1, 100])
    def test_cursor_out_of_range(self, offset):
        assert classify("abc", offset).ambiguous

    def test_cursor_at_zero(self):
        ctx = classify("abc", 0)
        assert not ctx.ambiguous
        assert ctx.prefix == ""


class TestIsSqlCallee:
    def test_recognized(self):
        assert is_sql_callee("con.execute")
        assert is_sql_callee("spark.sql")
        assert is_sql_callee("self.db.query")

    def test_not_recognized(self):
        assert not is_sql_callee("sql")
        assert not is_sql_callee(None)
        assert not is_sql_callee("db.fetchall")
