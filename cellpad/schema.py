"""
SchemaCatalog: tables and columns known to SQL-capable objects in the kernel.

The catalog is an immutable value built from one ``schema`` introspection
reply. A refresh replaces it wholesale, so a dropped table disappears on the
next refresh.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class TableSchema(BaseModel):
    """One table (or view) and its columns, in declaration order."""
    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[str, ...] = ()
    engine: str = ""
    engine_type: str = ""

    @property
    def short_name(self) -> str:
        """Unqualified table name (``sales.orders`` -> ``orders``)."""
        return self.name.rsplit(".", 1)[-1]


class SchemaCatalog(BaseModel):
    """Immutable table/column inventory plus the SQL functions the engines report."""
    model_config = ConfigDict(frozen=True)

    tables: tuple[TableSchema, ...] = ()
    functions: tuple[str, ...] = ()
    generation: int = 0

    @classmethod
    def from_payload(cls, data: Any, generation: int = 0) -> "SchemaCatalog":
        """
        Build a catalog from a ``schema`` introspection reply.

        Raises:
            ValueError: if the payload does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ValueError(f"schema payload must be an object, got {type(data).__name__}")
        tables = []
        for entry in data.get("tables", []):
            if not isinstance(entry, dict) or not entry.get("name"):
                raise ValueError(f"invalid table entry: {entry!r}")
            tables.append(TableSchema(
                name=str(entry["name"]),
                columns=tuple(str(c) for c in entry.get("columns", [])),
                engine=str(entry.get("engine", "")),
                engine_type=str(entry.get("engine_type", "")),
            ))
        functions = tuple(str(f) for f in data.get("functions", []))
        return cls(tables=tuple(tables), functions=functions, generation=generation)

    def __len__(self) -> int:
        return len(self.tables)

    def table_names(self) -> list[str]:
        seen = []
        for table in self.tables:
            if table.name not in seen:
                seen.append(table.name)
        return seen

    def table(self, name: str) -> Optional[TableSchema]:
        """
        Find a table by name, case-insensitively.

        A bare name also matches the unqualified part of a qualified table.
        """
        wanted = name.strip('"`[]').lower()
        for table in self.tables:
            if table.name.lower() == wanted:
                return table
        for table in self.tables:
            if table.short_name.lower() == wanted:
                return table
        return None

    def columns(self, table: Optional[str] = None) -> list[str]:
        """Columns of one table, or of every table (deduplicated, in order)."""
        if table is not None:
            found = self.table(table)
            return list(found.columns) if found else []
        result: list[str] = []
        seen = set()
        for entry in self.tables:
            for column in entry.columns:
                if column not in seen:
                    seen.add(column)
                    result.append(column)
        return result

    def to_dict(self) -> dict:
        return {
            "tables": [t.model_dump() for t in self.tables],
            "functions": list(self.functions),
            "generation": self.generation,
        }


EMPTY_CATALOG = SchemaCatalog()
