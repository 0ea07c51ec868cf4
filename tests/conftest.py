"""Pytest fixtures shared across all test modules."""

import sys

import pytest

from cellpad.kernel import KernelSession
from cellpad.namespace import NamespaceSnapshot, SnapshotStore
from cellpad.schema import SchemaCatalog


@pytest.fixture
def kernel():
    """A started KernelSession running the current interpreter."""
    session = KernelSession(sys.executable, handshake_timeout=60)
    session.start().result(timeout=60)
    yield session
    session.shutdown()


@pytest.fixture
def store():
    """SnapshotStore pre-loaded with a small namespace and schema."""
    namespace = NamespaceSnapshot.from_payload({
        "symbols": {
            "db": {
                "type": "duckdb.duckdb.DuckDBPyConnection",
                "kind": "instance",
                "attributes": ["close", "execute", "sql", "table"],
            },
            "duckdb": {
                "type": "module",
                "kind": "module",
                "module": "duckdb",
                "attributes": ["connect", "sql", "read_csv"],
            },
            "df": {"type": "pandas.core.frame.DataFrame", "kind": "instance"},
            "price": {"type": "float", "kind": "instance"},
            "name": {"type": "str", "kind": "instance"},
            "make_frame": {
                "type": "function",
                "kind": "function",
                "call_returns": "pandas.core.frame.DataFrame",
            },
            "thing": {
                "type": "app.models.Thing",
                "kind": "instance",
                "attributes": ["size", "start", "stop"],
                "members": {"size": "int"},
            },
        }
    }, generation=1)
    catalog = SchemaCatalog.from_payload({
        "tables": [
            {"name": "orders", "columns": ["id", "customer_id", "amount"], "engine": "db"},
            {"name": "customers", "columns": ["id", "name", "email"], "engine": "db"},
            {"name": "users", "columns": ["id", "login"], "engine": "db"},
        ],
        "functions": ["count", "read_csv_auto"],
    }, generation=1)
    s = SnapshotStore()
    s.publish(namespace, catalog)
    return s
