"""
Tests for CompletionProvider ranking across SQL, method-chain and plain contexts.
"""

from cellpad.completion import (
    Category,
    CompletionCandidate,
    CompletionProvider,
    rank,
    resolve_receiver,
    split_chain,
)
from cellpad.namespace import NamespaceSnapshot, SnapshotStore
from cellpad.profiles import DUCKDB_RELATION, PANDAS_SERIES


def texts(candidates):
    return [c.text for c in candidates]


def complete(provider, text):
    return provider.complete(text, len(text))


class TestRank:
    def test_priority_then_alphabetical(self):
        candidates = [
            CompletionCandidate(text="SELECT", category=Category.KEYWORD),
            CompletionCandidate(text="sum", category=Category.FUNCTION),
            CompletionCandidate(text="orders", category=Category.TABLE),
            CompletionCandidate(text="amount", category=Category.COLUMN),
        ]
        ranked = rank(candidates, {Category.TABLE: 0, Category.COLUMN: 0,
                                   Category.FUNCTION: 1, Category.KEYWORD: 2})
        assert texts(ranked) == ["amount", "orders", "sum", "SELECT"]

    def test_case_insensitive_dedup_keeps_better_rank(self):
        candidates = [
            CompletionCandidate(text="COUNT", category=Category.FUNCTION),
            CompletionCandidate(text="count", category=Category.COLUMN),
        ]
        ranked = rank(candidates, {Category.COLUMN: 0, Category.FUNCTION: 1})
        assert len(ranked) == 1
        assert ranked[0].category == Category.COLUMN

    def test_case_sensitive_keeps_both(self):
        candidates = [
            CompletionCandidate(text="Data", category=Category.SYMBOL),
            CompletionCandidate(text="data", category=Category.SYMBOL),
        ]
        assert len(rank(candidates, {Category.SYMBOL: 0}, case_insensitive=False)) == 2


class TestSqlCompletion:
    def _provider(self, store):
        return CompletionProvider(store)

    def test_keyword_prefix(self, store):
        provider = self._provider(store)
        assert texts(complete(provider, 'db.sql("se')) == ["SELECT", "SET"]
        assert texts(complete(provider, 'db.sql("sel')) == ["SELECT"]

    def test_table_after_from(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM ord')
        assert result[0].text == "orders"
        assert result[0].category == Category.TABLE
        # keywords come after tables
        assert texts(result) == ["orders", "ORDER"]

    def test_tables_after_join(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM orders o JOIN ')
        assert texts(result)[:3] == ["customers", "orders", "users"]

    def test_from_comma_list(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM orders, cu')
        assert texts(result) == ["customers"]

    def test_alias_columns(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM orders o WHERE o.')
        assert texts(result) == ["amount", "customer_id", "id"]
        assert all(c.category == Category.COLUMN for c in result)
        assert result[0].detail == "orders"

    def test_table_name_as_qualifier(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM users WHERE users.lo')
        assert texts(result) == ["login"]

    def test_columns_without_from(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT am')
        assert texts(result) == ["amount"]

    def test_columns_of_referenced_table_first(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM customers WHERE ')
        assert texts(result)[:3] == ["email", "id", "name"]
        assert result[3].category == Category.FUNCTION
        assert "login" not in texts(result)

    def test_catalog_function_deduplicated(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT cou')
        assert texts(result) == ["COUNT"]

    def test_catalog_function(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT read_')
        assert texts(result) == ["read_csv_auto"]
        assert result[0].category == Category.FUNCTION

    def test_table_position_offers_no_functions(self, store):
        result = complete(self._provider(store), 'db.sql("SELECT * FROM co')
        assert "customers" in texts(result)
        assert "COUNT" not in texts(result)
        assert Category.FUNCTION not in {c.category for c in result}

    def test_inside_sql_string_literal(self, store):
        result = complete(self._provider(store), "db.sql(\"SELECT * FROM orders WHERE note = 'ord")
        assert result == []

    def test_unknown_alias(self, store):
        assert complete(self._provider(store), 'db.sql("SELECT x.') == []

    def test_limit(self, store):
        provider = CompletionProvider(store, limit=3)
        result = complete(provider, 'db.sql("SELECT * FROM customers WHERE ')
        assert texts(result) == ["email", "id", "name"]

    def test_empty_catalog(self):
        provider = CompletionProvider(SnapshotStore())
        result = complete(provider, 'db.sql("SELECT * FROM ord')
        assert texts(result) == ["ORDER"]


class TestMethodChainCompletion:
    def test_duckdb_relation_chain(self, store):
        result = complete(CompletionProvider(store), 'db.sql("SELECT 1").fi')
        assert "filter" in texts(result)
        assert all(t.startswith("fi") for t in texts(result))
        assert all(c.category == Category.ATTRIBUTE for c in result)

    def test_module_function_chain(self, store):
        result = complete(CompletionProvider(store), 'duckdb.sql("SELECT 1").li')
        assert texts(result) == ["limit"]

    def test_subscript_then_attribute(self, store):
        result = complete(CompletionProvider(store), 'df["amount"].val')
        assert texts(result) == ["value_counts", "values"]

    def test_function_call_result(self, store):
        result = complete(CompletionProvider(store), "make_frame().hea")
        assert texts(result) == ["head"]

    def test_string_literal(self, store):
        result = complete(CompletionProvider(store), '"abc".up')
        assert texts(result) == ["upper"]

    def test_introspected_attributes(self, store):
        result = complete(CompletionProvider(store), "thing.s")
        assert texts(result) == ["size", "start", "stop"]
        assert result[0].detail == "int"

    def test_symbol_attributes_merge_with_profile(self, store):
        result = complete(CompletionProvider(store), "db.")
        names = texts(result)
        assert "sql" in names
        assert "close" in names
        assert names == sorted(names, key=lambda n: (n.lower(), n))

    def test_unknown_receiver(self, store):
        assert complete(CompletionProvider(store), "missing.fo") == []
        assert complete(CompletionProvider(store), "thing.size().") == []

    def test_private_names_need_underscore_prefix(self):
        store = SnapshotStore()
        store.publish(NamespaceSnapshot.from_payload({
            "symbols": {"cache": {"type": "app.Cache", "attributes": ["_data", "clear"]}},
        }))
        provider = CompletionProvider(store)
        assert texts(complete(provider, "cache.")) == ["clear"]
        assert texts(complete(provider, "cache._")) == ["_data"]


class TestPlainCompletion:
    def test_symbols_before_builtins(self, store):
        result = complete(CompletionProvider(store), "pri")
        assert texts(result) == ["price", "print"]
        assert result[0].category == Category.SYMBOL
        assert result[0].detail == "float"
        assert result[1].category == Category.FUNCTION

    def test_keyword(self, store):
        result = complete(CompletionProvider(store), "x = 1\nwhi")
        assert texts(result) == ["while"]
        assert result[0].category == Category.KEYWORD

    def test_empty_prefix(self, store):
        assert complete(CompletionProvider(store), "x = ") == []

    def test_case_sensitive(self, store):
        assert "price" not in texts(complete(CompletionProvider(store), "Pri"))

    def test_ambiguous(self, store):
        assert complete(CompletionProvider(store), "x = 1  # pri") == []


class TestCompleteDocument:
    def test_offset_into_second_cell(self, store):
        document = "import duckdb\n# %% query\ndb.sql(\"SELECT * FROM ord"
        result = CompletionProvider(store).complete_document(document, len(document))
        assert texts(result)[0] == "orders"

    def test_offset_into_first_cell(self, store):
        document = "pri\n# %%\nx = 1\n"
        result = CompletionProvider(store).complete_document(document, 3)
        assert texts(result) == ["price", "print"]

    def test_offset_out_of_range(self, store):
        assert CompletionProvider(store).complete_document("x", 10) == []


class TestResolveReceiver:
    def test_split_chain(self):
        assert split_chain('db.sql("a.b").limit(1)') == [
            ("name", "db"), ("attr", "sql"), ("call", None), ("attr", "limit"), ("call", None),
        ]
        assert split_chain("x + y") is None

    def test_resolve_types(self, store):
        namespace = store.namespace
        assert resolve_receiver('db.sql("x")', namespace)[1] == DUCKDB_RELATION
        assert resolve_receiver("df['a']", namespace)[1] == PANDAS_SERIES
        assert resolve_receiver("duckdb", namespace)[0] == "module"
