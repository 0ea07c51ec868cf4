"""
NamespaceSnapshot: point-in-time description of the kernel's global names.

Snapshots are rebuilt wholesale from a ``namespace`` introspection reply after
each successful execution. SnapshotStore holds the current namespace snapshot
and schema catalog and swaps them atomically, so readers on the completion
path never see a half-updated pair.
"""

import threading
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from cellpad.profiles import UNKNOWN, sql_engine_for
from cellpad.schema import EMPTY_CATALOG, SchemaCatalog


class SymbolInfo(BaseModel):
    """What the kernel reported about one global name."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = UNKNOWN
    kind: str = "instance"
    module: Optional[str] = None
    attributes: tuple[str, ...] = ()
    members: dict[str, str] = Field(default_factory=dict)
    returns: dict[str, str] = Field(default_factory=dict)
    call_returns: Optional[str] = None

    @property
    def sql_engine(self) -> Optional[str]:
        return sql_engine_for(self.type, self.module)


class NamespaceSnapshot(BaseModel):
    """Immutable mapping of symbol name -> SymbolInfo."""
    model_config = ConfigDict(frozen=True)

    symbols: dict[str, SymbolInfo] = Field(default_factory=dict)
    generation: int = 0

    @classmethod
    def from_payload(cls, data: Any, generation: int = 0) -> "NamespaceSnapshot":
        """
        Build a snapshot from a ``namespace`` introspection reply.

        Raises:
            ValueError: if the payload does not have the expected shape
        """
        if not isinstance(data, dict) or not isinstance(data.get("symbols"), dict):
            raise ValueError("namespace payload must contain a 'symbols' object")
        symbols = {}
        for name, info in data["symbols"].items():
            if not isinstance(info, dict):
                raise ValueError(f"invalid symbol entry for {name!r}")
            symbols[name] = SymbolInfo(
                name=name,
                type=info.get("type") or UNKNOWN,
                kind=info.get("kind", "instance"),
                module=info.get("module"),
                attributes=tuple(info.get("attributes", [])),
                members=dict(info.get("members", {})),
                returns=dict(info.get("returns", {})),
                call_returns=info.get("call_returns"),
            )
        return cls(symbols=symbols, generation=generation)

    def __contains__(self, name: str) -> bool:
        return name in self.symbols

    def __len__(self) -> int:
        return len(self.symbols)

    def get(self, name: str) -> Optional[SymbolInfo]:
        return self.symbols.get(name)

    def names(self) -> list[str]:
        return sorted(self.symbols)

    def type_of(self, name: str) -> str:
        symbol = self.symbols.get(name)
        return symbol.type if symbol else UNKNOWN

    def sql_targets(self) -> list[dict[str, str]]:
        """SQL-capable objects, as targets for a ``schema`` introspection query."""
        targets = []
        for name in self.names():
            symbol = self.symbols[name]
            engine = symbol.sql_engine
            if engine:
                targets.append({"name": name, "engine": engine, "type": symbol.type})
        return targets


EMPTY_NAMESPACE = NamespaceSnapshot()


class SnapshotStore:
    """
    Current NamespaceSnapshot and SchemaCatalog.

    Written by the execution side, read by completion. Values are immutable,
    only the references are swapped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._namespace = EMPTY_NAMESPACE
        self._catalog = EMPTY_CATALOG
        self._generation = 0

    @property
    def namespace(self) -> NamespaceSnapshot:
        with self._lock:
            return self._namespace

    @property
    def catalog(self) -> SchemaCatalog:
        with self._lock:
            return self._catalog

    def snapshot(self) -> tuple[NamespaceSnapshot, SchemaCatalog]:
        """Both values, read together."""
        with self._lock:
            return self._namespace, self._catalog

    def next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def publish(self, namespace: Optional[NamespaceSnapshot] = None,
                catalog: Optional[SchemaCatalog] = None):
        """Swap in new values; None keeps the current one."""
        with self._lock:
            if namespace is not None:
                self._namespace = namespace
            if catalog is not None:
                self._catalog = catalog

    def reset(self):
        with self._lock:
            self._namespace = EMPTY_NAMESPACE
            self._catalog = EMPTY_CATALOG
