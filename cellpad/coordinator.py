"""
ExecutionCoordinator: runs cells of a document through a KernelSession.

It owns the per-cell ExecutionRecords and, after each execution, refreshes
the NamespaceSnapshot and SchemaCatalog in the background.
"""

import logging
import threading
import time
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from cellpad.errors import CellInterruptedError, CellpadError, ExecutionError, SchemaRefreshError
from cellpad.kernel import KernelSession
from cellpad.namespace import NamespaceSnapshot, SnapshotStore
from cellpad.protocol import INTERRUPTED, NAMESPACE, SCHEMA, Reply, StreamChunk
from cellpad.schema import SchemaCatalog
from cellpad.segmenter import DEFAULT_DELIMITER, Cell, segment

logger = logging.getLogger(__name__)

OutputCallback = Callable[[int, StreamChunk], None]


class RecordStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionRecord(BaseModel):
    """Outcome of the latest execution of one cell."""
    cell_index: int
    status: RecordStatus = RecordStatus.PENDING
    outputs: list[dict[str, Any]] = Field(default_factory=list)
    result: Optional[str] = None
    execution_count: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    traceback: list[str] = Field(default_factory=list)
    duration: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RecordStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == RecordStatus.FAILED

    @property
    def interrupted(self) -> bool:
        return self.failed and self.error_kind == INTERRUPTED

    def text(self, name: Optional[str] = None) -> str:
        """Concatenated stream output, optionally of one stream only."""
        return "".join(o["text"] for o in self.outputs if name is None or o["name"] == name)

    def to_error(self) -> Optional[ExecutionError]:
        """The failure as an exception, or None if the record did not fail."""
        if not self.failed:
            return None
        if self.interrupted:
            return CellInterruptedError(self.error_message or "Execution interrupted")
        return ExecutionError(self.error_kind or "Error", self.error_message or "", self.traceback)

    @classmethod
    def from_reply(cls, cell_index: int, reply: Reply, duration: Optional[float] = None) -> "ExecutionRecord":
        return cls(
            cell_index=cell_index,
            status=RecordStatus.SUCCEEDED if reply.ok else RecordStatus.FAILED,
            outputs=[chunk.to_dict() for chunk in reply.chunks],
            result=reply.result,
            execution_count=reply.execution_count,
            error_kind=None if reply.ok else (reply.error_kind or "Error"),
            error_message=None if reply.ok else reply.message,
            traceback=[] if reply.ok else list(reply.traceback),
            duration=duration,
        )


class RunSummary(BaseModel):
    """Result of a headless run over the whole document."""
    records: list[ExecutionRecord]
    success: bool

    @property
    def failed_record(self) -> Optional[ExecutionRecord]:
        for record in self.records:
            if record.failed:
                return record
        return None

    @property
    def executed(self) -> int:
        return sum(1 for r in self.records if r.status != RecordStatus.PENDING)


class ExecutionCoordinator:
    """
    Executes cells and keeps their records.

    Interactive callers use execute_cell(); headless runs use execute_all(),
    which stops at the first failing cell.
    """

    def __init__(
        self,
        session: KernelSession,
        store: Optional[SnapshotStore] = None,
        document: str = "",
        delimiter: str = DEFAULT_DELIMITER,
        auto_refresh: bool = True,
    ):
        self.session = session
        self.store = store or SnapshotStore()
        self.delimiter = delimiter
        self.auto_refresh = auto_refresh
        self.last_refresh: Optional[Future] = None
        self._lock = threading.Lock()
        self._document = document
        self._cells = segment(document, delimiter)
        self._records = {cell.index: ExecutionRecord(cell_index=cell.index) for cell in self._cells}

    # ------------------------------------------------------------------ #
    # Document and records
    # ------------------------------------------------------------------ #

    @property
    def document(self) -> str:
        return self._document

    @property
    def cells(self) -> list[Cell]:
        with self._lock:
            return list(self._cells)

    @property
    def records(self) -> list[ExecutionRecord]:
        """Records of every cell, ordered by cell index."""
        with self._lock:
            return [self._records[i] for i in sorted(self._records)]

    def record(self, index: int) -> ExecutionRecord:
        with self._lock:
            return self._records[index]

    def set_document(self, text: str):
        """Replace the document; records of cells that no longer exist are dropped."""
        cells = segment(text, self.delimiter)
        with self._lock:
            self._document = text
            self._cells = cells
            self._records = {
                cell.index: self._records.get(cell.index) or ExecutionRecord(cell_index=cell.index)
                for cell in cells
            }

    def clear(self):
        """Reset every record to Pending; the kernel keeps its state."""
        with self._lock:
            self._records = {i: ExecutionRecord(cell_index=i) for i in self._records}

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute_cell(self, index: int, on_output: Optional[OutputCallback] = None) -> Future:
        """
        Send one cell to the kernel.

        Args:
            index: Cell index in the current document
            on_output: Called with (index, chunk) as output arrives

        Returns:
            Future resolving to the cell's final ExecutionRecord. It fails with
            the kernel error if the session dies during the request.

        Raises:
            IndexError: no such cell
            KernelBusyError: another cell is running
            KernelNotReadyError: the session is not ready
        """
        with self._lock:
            cells = segment(self._document, self.delimiter)
            self._cells = cells
            if index < 0 or index >= len(cells):
                raise IndexError(f"Cell index {index} out of range (0-{len(cells) - 1})")
            cell = cells[index]

        on_chunk = None
        if on_output is not None:
            def on_chunk(chunk: StreamChunk):
                on_output(index, chunk)

        started = time.monotonic()
        # busy/not-ready errors propagate before the record is touched
        reply_future = self.session.execute(cell.body, on_chunk=on_chunk)
        with self._lock:
            self._records[index] = ExecutionRecord(cell_index=index, status=RecordStatus.RUNNING)

        done: Future = Future()
        reply_future.add_done_callback(lambda f: self._finish(index, started, f, done))
        return done

    def _finish(self, index: int, started: float, reply_future: Future, done: Future):
        duration = time.monotonic() - started
        error = reply_future.exception()
        if error is not None:
            record = ExecutionRecord(
                cell_index=index,
                status=RecordStatus.FAILED,
                error_kind=type(error).__name__,
                error_message=str(error),
                duration=duration,
            )
            self._store_record(record)
            done.set_exception(error)
            return

        record = ExecutionRecord.from_reply(index, reply_future.result(), duration)
        self._store_record(record)
        logger.debug("Cell %d %s in %.3fs", index, record.status.value, duration)
        if self.auto_refresh:
            # queued before the record resolves so the next cell runs after it
            self.refresh()
        done.set_result(record)

    def _store_record(self, record: ExecutionRecord):
        with self._lock:
            if record.cell_index in self._records:
                self._records[record.cell_index] = record

    def execute_all(self, document: Optional[str] = None,
                    on_output: Optional[OutputCallback] = None) -> RunSummary:
        """
        Run every cell in source order, stopping at the first failure.

        Cells after a failed one stay Pending. Blank cells count as succeeded
        without being sent.

        Args:
            document: Document to run; defaults to the current one
            on_output: Forwarded to execute_cell

        Returns:
            RunSummary; success is True only if every cell succeeded

        Raises:
            CellpadError: a fatal kernel error aborted the run
        """
        if document is not None:
            self.set_document(document)
        self.clear()

        for cell in self.cells:
            if not cell.body.strip():
                self._store_record(ExecutionRecord(cell_index=cell.index, status=RecordStatus.SUCCEEDED,
                                                   duration=0.0))
                continue
            if not self.session.wait_ready():
                raise self.session.error or CellpadError(f"Kernel is {self.session.state.value}")
            record = self.execute_cell(cell.index, on_output).result()
            if record.failed:
                logger.info("Cell %d failed (%s); stopping", cell.index, record.error_kind)
                break

        records = self.records
        return RunSummary(records=records, success=all(r.succeeded for r in records))

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    def refresh(self) -> Future:
        """
        Rebuild the namespace snapshot, then the schema catalog, in the background.

        Returns:
            Future resolving to the new (NamespaceSnapshot, SchemaCatalog) pair,
            or failing with SchemaRefreshError (the previous values are kept)
        """
        done: Future = Future()
        self.last_refresh = done
        generation = self.store.next_generation()
        try:
            ns_future = self.session.introspect(NAMESPACE)
        except CellpadError as e:
            self._refresh_failed(done, f"namespace query not sent: {e}")
            return done
        ns_future.add_done_callback(lambda f: self._namespace_arrived(f, generation, done))
        return done

    def _namespace_arrived(self, future: Future, generation: int, done: Future):
        try:
            reply = self._introspection_reply(future, "namespace")
            namespace = NamespaceSnapshot.from_payload(reply.data, generation)
        except (SchemaRefreshError, ValueError) as e:
            self._refresh_failed(done, str(e))
            return

        targets = namespace.sql_targets()
        if not targets:
            catalog = SchemaCatalog(generation=generation)
            self.store.publish(namespace, catalog)
            done.set_result((namespace, catalog))
            return
        try:
            schema_future = self.session.introspect(SCHEMA, targets=targets)
        except CellpadError as e:
            self.store.publish(namespace=namespace)
            self._refresh_failed(done, f"schema query not sent: {e}")
            return
        schema_future.add_done_callback(
            lambda f: self._schema_arrived(f, namespace, generation, done)
        )

    def _schema_arrived(self, future: Future, namespace: NamespaceSnapshot, generation: int,
                        done: Future):
        try:
            reply = self._introspection_reply(future, "schema")
            catalog = SchemaCatalog.from_payload(reply.data, generation)
        except (SchemaRefreshError, ValueError) as e:
            self.store.publish(namespace=namespace)
            self._refresh_failed(done, str(e))
            return
        for error in (reply.data or {}).get("errors", []):
            logger.warning("Schema query for %s failed: %s", error.get("target"), error.get("message"))
        self.store.publish(namespace, catalog)
        logger.debug("Snapshots refreshed: %d symbols, %d tables", len(namespace), len(catalog))
        done.set_result((namespace, catalog))

    @staticmethod
    def _introspection_reply(future: Future, query: str) -> Reply:
        error = future.exception()
        if error is not None:
            raise SchemaRefreshError(f"{query} query failed: {error}")
        reply = future.result()
        if not reply.ok:
            raise SchemaRefreshError(f"{query} query failed: {reply.error_kind}: {reply.message}")
        return reply

    @staticmethod
    def _refresh_failed(done: Future, message: str):
        error = SchemaRefreshError(message)
        logger.warning("Snapshot refresh failed: %s", error)
        done.set_exception(error)

    # ------------------------------------------------------------------ #
    # Kernel
    # ------------------------------------------------------------------ #

    def switch_kernel(self, interpreter: str) -> Future:
        """
        Replace the kernel with one running ``interpreter``.

        The new kernel starts empty, so snapshots and records are reset.

        Returns:
            The new session's start future
        """
        logger.info("Switching kernel to %s", interpreter)
        self.session.shutdown()
        self.store.reset()
        self.clear()
        return self.session.start(interpreter)
