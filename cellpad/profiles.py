"""
Capability profiles: what we know about common runtime types.

Type tags come from the kernel as ``module.QualName`` (bare names for
builtins). Profiles are looked up by (root package, class name) so that
``duckdb.duckdb.DuckDBPyConnection`` and ``_duckdb.DuckDBPyConnection`` map
to the same entry while ``pandas...DataFrame`` and ``pyspark...DataFrame``
stay apart.
"""

from dataclasses import dataclass, field
from typing import Optional

UNKNOWN = "unknown"

DUCKDB_CONNECTION = "duckdb.DuckDBPyConnection"
DUCKDB_RELATION = "duckdb.DuckDBPyRelation"
SQLITE_CONNECTION = "sqlite3.Connection"
SQLITE_CURSOR = "sqlite3.Cursor"
SPARK_SESSION = "pyspark.sql.session.SparkSession"
SPARK_DATAFRAME = "pyspark.sql.dataframe.DataFrame"
PANDAS_DATAFRAME = "pandas.core.frame.DataFrame"
PANDAS_SERIES = "pandas.core.series.Series"
POLARS_DATAFRAME = "polars.dataframe.frame.DataFrame"


@dataclass(frozen=True)
class Profile:
    """Known methods/attributes of a type and the types some methods return."""
    methods: tuple[str, ...]
    attributes: tuple[str, ...] = ()
    returns: dict[str, str] = field(default_factory=dict)
    engine: Optional[str] = None

    @property
    def names(self) -> tuple[str, ...]:
        return self.methods + self.attributes


def profile_key(tag: Optional[str]) -> tuple[str, str]:
    """Reduce a type tag to (root package, class name)."""
    if not tag:
        return ("", "")
    if "." not in tag:
        return ("builtins", tag)
    root = tag.split(".", 1)[0].lstrip("_")
    return (root, tag.rsplit(".", 1)[1])


def _returning(tag: str, *methods: str) -> dict[str, str]:
    return {m: tag for m in methods}


_RELATION_METHODS = (
    "aggregate", "apply", "arrow", "count", "create", "create_view", "describe",
    "df", "distinct", "except_", "execute", "explain", "fetchall", "fetchdf",
    "fetchmany", "fetchnumpy", "fetchone", "filter", "insert", "insert_into",
    "intersect", "join", "limit", "map", "max", "mean", "min", "order", "pl",
    "project", "query", "select", "set_alias", "show", "sort", "sum", "to_arrow_table",
    "to_csv", "to_df", "to_parquet", "to_table", "to_view", "union", "unique",
    "write_csv", "write_parquet",
)

_DUCKDB_CONNECTION_METHODS = (
    "append", "arrow", "begin", "close", "commit", "create_function", "cursor",
    "df", "execute", "executemany", "fetch_df", "fetchall", "fetchdf", "fetchmany",
    "fetchnumpy", "fetchone", "from_arrow", "from_csv_auto", "from_df", "from_parquet",
    "install_extension", "load_extension", "pl", "query", "read_csv", "read_json",
    "read_parquet", "register", "rollback", "sql", "table", "unregister", "values", "view",
)

_PANDAS_FRAME_METHODS = (
    "agg", "apply", "assign", "astype", "copy", "count", "describe", "drop",
    "drop_duplicates", "dropna", "fillna", "filter", "groupby", "head", "info",
    "isna", "join", "max", "mean", "melt", "merge", "min", "notna", "nunique",
    "pivot", "pivot_table", "plot", "query", "rename", "reset_index", "sample",
    "set_index", "sort_index", "sort_values", "sum", "tail", "to_csv", "to_dict",
    "to_json", "to_numpy", "to_parquet", "to_sql",
)

_PANDAS_SERIES_METHODS = (
    "agg", "apply", "astype", "copy", "count", "describe", "drop", "dropna",
    "fillna", "head", "isin", "isna", "map", "max", "mean", "min", "notna",
    "nunique", "plot", "rename", "reset_index", "sort_values", "sum", "tail",
    "to_frame", "to_list", "to_numpy", "unique", "value_counts",
)

_SPARK_FRAME_METHODS = (
    "agg", "alias", "cache", "collect", "count", "createOrReplaceTempView",
    "describe", "distinct", "drop", "dropDuplicates", "explain", "filter", "first",
    "groupBy", "head", "join", "limit", "orderBy", "persist", "printSchema",
    "select", "show", "sort", "take", "toPandas", "union", "unionByName", "where",
    "withColumn", "withColumnRenamed",
)

_POLARS_FRAME_METHODS = (
    "describe", "drop", "filter", "group_by", "head", "join", "lazy", "limit",
    "rename", "select", "sort", "tail", "to_dicts", "to_pandas", "unique",
    "with_columns", "write_csv", "write_parquet",
)


def _builtin_methods(cls: type) -> tuple[str, ...]:
    return tuple(sorted(n for n in dir(cls) if not n.startswith("_")))


PROFILES: dict[tuple[str, str], Profile] = {
    profile_key(DUCKDB_CONNECTION): Profile(
        methods=_DUCKDB_CONNECTION_METHODS,
        attributes=("description", "rowcount"),
        returns={
            **_returning(DUCKDB_RELATION, "sql", "query", "table", "view", "values",
                         "read_csv", "read_json", "read_parquet", "from_df", "from_arrow",
                         "from_csv_auto", "from_parquet"),
            **_returning(DUCKDB_CONNECTION, "execute", "executemany", "cursor", "begin",
                         "commit", "rollback", "register", "unregister"),
            **_returning(PANDAS_DATAFRAME, "df", "fetchdf", "fetch_df"),
            **_returning("list", "fetchall", "fetchmany"),
        },
        engine="duckdb",
    ),
    profile_key(DUCKDB_RELATION): Profile(
        methods=_RELATION_METHODS,
        attributes=("alias", "columns", "dtypes", "shape", "sql_query", "type", "types"),
        returns={
            **_returning(DUCKDB_RELATION, "aggregate", "apply", "distinct", "except_",
                         "filter", "intersect", "join", "limit", "map", "order", "project",
                         "query", "select", "set_alias", "sort", "union", "unique", "max",
                         "mean", "min", "sum", "count"),
            **_returning(PANDAS_DATAFRAME, "df", "fetchdf", "to_df"),
            **_returning("list", "fetchall", "fetchmany", "columns", "types", "dtypes"),
        },
    ),
    profile_key(SQLITE_CONNECTION): Profile(
        methods=("backup", "close", "commit", "create_aggregate", "create_collation",
                 "create_function", "cursor", "execute", "executemany", "executescript",
                 "interrupt", "iterdump", "rollback"),
        attributes=("in_transaction", "isolation_level", "row_factory", "text_factory",
                    "total_changes"),
        returns=_returning(SQLITE_CURSOR, "cursor", "execute", "executemany", "executescript"),
        engine="sqlite",
    ),
    profile_key(SQLITE_CURSOR): Profile(
        methods=("close", "execute", "executemany", "executescript", "fetchall",
                 "fetchmany", "fetchone", "setinputsizes", "setoutputsize"),
        attributes=("arraysize", "connection", "description", "lastrowid", "row_factory",
                    "rowcount"),
        returns={
            **_returning(SQLITE_CURSOR, "execute", "executemany", "executescript"),
            **_returning("list", "fetchall", "fetchmany"),
        },
    ),
    profile_key(SPARK_SESSION): Profile(
        methods=("createDataFrame", "newSession", "range", "sql", "stop", "table"),
        attributes=("catalog", "conf", "read", "readStream", "sparkContext", "streams",
                    "udf", "version"),
        returns=_returning(SPARK_DATAFRAME, "createDataFrame", "range", "sql", "table"),
        engine="spark",
    ),
    profile_key(SPARK_DATAFRAME): Profile(
        methods=_SPARK_FRAME_METHODS,
        attributes=("columns", "dtypes", "rdd", "schema", "write"),
        returns={
            **_returning(SPARK_DATAFRAME, "agg", "alias", "cache", "distinct", "drop",
                         "dropDuplicates", "filter", "join", "limit", "orderBy", "persist",
                         "select", "sort", "union", "unionByName", "where", "withColumn",
                         "withColumnRenamed"),
            **_returning(PANDAS_DATAFRAME, "toPandas"),
            **_returning("list", "collect", "take", "columns", "dtypes"),
        },
    ),
    profile_key(PANDAS_DATAFRAME): Profile(
        methods=_PANDAS_FRAME_METHODS,
        attributes=("T", "at", "columns", "dtypes", "iat", "iloc", "index", "loc",
                    "shape", "size", "values"),
        returns={
            **_returning(PANDAS_DATAFRAME, "assign", "astype", "copy", "describe", "drop",
                         "drop_duplicates", "dropna", "fillna", "filter", "head", "isna",
                         "join", "melt", "merge", "notna", "pivot", "pivot_table", "query",
                         "rename", "reset_index", "sample", "set_index", "sort_index",
                         "sort_values", "tail", "T"),
            **_returning(PANDAS_SERIES, "count", "max", "mean", "min", "nunique", "sum",
                         "dtypes", "__getitem__"),
            **_returning("dict", "to_dict"),
            **_returning("str", "to_json"),
            **_returning("tuple", "shape"),
        },
    ),
    profile_key(PANDAS_SERIES): Profile(
        methods=_PANDAS_SERIES_METHODS,
        attributes=("dtype", "iat", "iloc", "index", "loc", "name", "shape", "size",
                    "str", "values"),
        returns={
            **_returning(PANDAS_SERIES, "apply", "astype", "copy", "drop", "dropna",
                         "fillna", "head", "isin", "isna", "map", "notna", "rename",
                         "sort_values", "tail", "value_counts"),
            **_returning(PANDAS_DATAFRAME, "describe", "reset_index", "to_frame"),
            **_returning("list", "to_list"),
        },
    ),
    profile_key(POLARS_DATAFRAME): Profile(
        methods=_POLARS_FRAME_METHODS,
        attributes=("columns", "dtypes", "height", "schema", "shape", "width"),
        returns={
            **_returning(POLARS_DATAFRAME, "describe", "drop", "filter", "head", "join",
                         "limit", "rename", "select", "sort", "tail", "unique",
                         "with_columns"),
            **_returning(PANDAS_DATAFRAME, "to_pandas"),
            **_returning("list", "columns", "to_dicts"),
        },
    ),
    ("builtins", "str"): Profile(
        methods=_builtin_methods(str),
        returns={
            **{m: "str" for m in _builtin_methods(str)
               if m not in ("split", "rsplit", "splitlines", "partition", "rpartition",
                            "encode", "find", "rfind", "index", "rindex", "count")
               and not m.startswith("is")},
            **_returning("list", "split", "rsplit", "splitlines"),
            **_returning("tuple", "partition", "rpartition"),
            **_returning("bytes", "encode"),
            **_returning("int", "find", "rfind", "index", "rindex", "count"),
        },
    ),
    ("builtins", "list"): Profile(methods=_builtin_methods(list), returns={"copy": "list"}),
    ("builtins", "dict"): Profile(methods=_builtin_methods(dict), returns={"copy": "dict"}),
    ("builtins", "set"): Profile(
        methods=_builtin_methods(set),
        returns=_returning("set", "copy", "difference", "intersection",
                           "symmetric_difference", "union"),
    ),
    ("builtins", "tuple"): Profile(methods=_builtin_methods(tuple)),
    ("builtins", "bytes"): Profile(methods=_builtin_methods(bytes)),
    ("builtins", "int"): Profile(methods=_builtin_methods(int)),
    ("builtins", "float"): Profile(methods=_builtin_methods(float)),
}

# module name -> profile for `import duckdb; duckdb.sql(...)` style usage
MODULE_PROFILES: dict[str, Profile] = {
    "duckdb": Profile(
        methods=("connect", "execute", "from_df", "query", "read_csv", "read_json",
                 "read_parquet", "sql", "table", "values", "view"),
        returns={
            **_returning(DUCKDB_RELATION, "from_df", "query", "read_csv", "read_json",
                         "read_parquet", "sql", "table", "values", "view"),
            **_returning(DUCKDB_CONNECTION, "connect", "execute"),
        },
        engine="duckdb",
    ),
    "sqlite3": Profile(
        methods=("connect",),
        returns=_returning(SQLITE_CONNECTION, "connect"),
    ),
    "pandas": Profile(
        methods=("DataFrame", "Series", "concat", "merge", "read_csv", "read_json",
                 "read_parquet", "read_sql", "read_sql_query", "read_sql_table"),
        returns={
            **_returning(PANDAS_DATAFRAME, "DataFrame", "concat", "merge", "read_csv",
                         "read_json", "read_parquet", "read_sql", "read_sql_query",
                         "read_sql_table"),
            **_returning(PANDAS_SERIES, "Series"),
        },
    ),
}

SQL_ENGINE_TYPES: dict[tuple[str, str], str] = {
    key: profile.engine for key, profile in PROFILES.items() if profile.engine
}
SQL_ENGINE_MODULES: dict[str, str] = {
    name: profile.engine for name, profile in MODULE_PROFILES.items() if profile.engine
}


def profile_for(tag: Optional[str]) -> Optional[Profile]:
    """Look up the capability profile for a type tag, if there is one."""
    return PROFILES.get(profile_key(tag))


def module_profile(module_name: Optional[str]) -> Optional[Profile]:
    if not module_name:
        return None
    return MODULE_PROFILES.get(module_name)


def sql_engine_for(tag: Optional[str], module_name: Optional[str] = None) -> Optional[str]:
    """Which schema query engine handles this object, if any."""
    if tag == "module":
        return SQL_ENGINE_MODULES.get(module_name or "")
    return SQL_ENGINE_TYPES.get(profile_key(tag))
