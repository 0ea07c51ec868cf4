"""
cellpad: a terminal notebook over plain Python files.

This package provides a notebook editor where:
- Cells are ranges of an ordinary .py file, separated by '# %%' lines
- Code runs in a persistent interpreter subprocess of your choice
- Completion understands SQL strings and method chains on live objects
"""

from cellpad.completion import Category, CompletionCandidate, CompletionProvider
from cellpad.config import Settings, load_settings
from cellpad.context import ContextKind, CursorContext, classify
from cellpad.coordinator import ExecutionCoordinator, ExecutionRecord, RecordStatus, RunSummary
from cellpad.kernel import KernelSession, KernelState
from cellpad.namespace import NamespaceSnapshot, SnapshotStore
from cellpad.schema import SchemaCatalog
from cellpad.segmenter import Cell, segment

__version__ = "0.1.0"
__all__ = [
    "Category",
    "Cell",
    "CompletionCandidate",
    "CompletionProvider",
    "ContextKind",
    "CursorContext",
    "ExecutionCoordinator",
    "ExecutionRecord",
    "KernelSession",
    "KernelState",
    "NamespaceSnapshot",
    "RecordStatus",
    "RunSummary",
    "SchemaCatalog",
    "Settings",
    "SnapshotStore",
    "classify",
    "load_settings",
    "segment",
]
