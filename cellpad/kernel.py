"""
KernelSession: one persistent interpreter subprocess and its protocol state.

The session runs the kernel server (kernel_server.py) under a user-selected
interpreter and talks to it over pipes. Two daemon threads own the pipes:
a reader that turns stdout into a queue of lines, and a worker that writes
queued requests and collects their frames. Public calls never block on kernel
I/O; they return ``concurrent.futures.Future`` objects.

State machine::

    UNSTARTED -> STARTING -> READY <-> BUSY
                     |         |        |
                     +---------+--------+--> ERRORED / TERMINATED
"""

import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from cellpad import protocol
from cellpad.errors import (
    KernelBusyError,
    KernelNotReadyError,
    KernelProtocolError,
    KernelStartError,
)
from cellpad.protocol import Reply, StreamChunk

logger = logging.getLogger(__name__)

SERVER_SCRIPT = Path(__file__).with_name("kernel_server.py")

ChunkCallback = Callable[[StreamChunk], None]


class KernelState(str, Enum):
    """Lifecycle state of a KernelSession."""
    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    ERRORED = "errored"
    TERMINATED = "terminated"


@dataclass
class KernelInfo:
    """Identity of the running kernel process, filled in by the handshake."""
    interpreter: str
    pid: Optional[int] = None
    version: Optional[str] = None
    executable: Optional[str] = None


@dataclass
class _Pending:
    request_id: int
    kind: str
    frame: dict[str, Any]
    future: Future = field(default_factory=Future)
    on_chunk: Optional[ChunkCallback] = None
    execution_count: Optional[int] = None


def server_source() -> str:
    """Source of the kernel server, passed to the interpreter with -c."""
    return SERVER_SCRIPT.read_text(encoding="utf-8")


class KernelSession:
    """
    Owns one interpreter subprocess running the kernel server.

    - execute() runs user code; only one execute may be in flight
    - introspect() runs privileged queries without touching the execution counter
    - interrupt() cancels the running cell
    """

    def __init__(
        self,
        interpreter: Optional[str] = None,
        handshake_timeout: float = 30.0,
        shutdown_timeout: float = 2.0,
        cwd: Optional[Path] = None,
    ):
        self.interpreter = interpreter
        self.handshake_timeout = handshake_timeout
        self.shutdown_timeout = shutdown_timeout
        self.cwd = cwd
        self.info: Optional[KernelInfo] = None
        self.error: Optional[Exception] = None
        self.execution_count = 0

        self._state = KernelState.UNSTARTED
        self._cond = threading.Condition()
        self._next_id = 0
        self._process: Optional[subprocess.Popen] = None
        self._requests: queue.Queue = queue.Queue()
        self._lines: queue.Queue = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._stderr_tail: deque = deque(maxlen=20)
        self._inflight: Optional[_Pending] = None
        self._interrupt_requested = False
        self._sync_pending = False

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> KernelState:
        with self._cond:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state == KernelState.READY

    @property
    def is_busy(self) -> bool:
        return self.state == KernelState.BUSY

    def _set_state(self, state: KernelState, only_from: Optional[tuple] = None) -> bool:
        with self._cond:
            if only_from is not None and self._state not in only_from:
                return False
            previous, self._state = self._state, state
            self._cond.notify_all()
        if previous != state:
            logger.debug("Kernel %s: %s -> %s", self.interpreter, previous.value, state.value)
        return True

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the session leaves STARTING/BUSY.

        Returns:
            True if the session is READY
        """
        settled = (KernelState.READY, KernelState.ERRORED, KernelState.TERMINATED,
                   KernelState.UNSTARTED)
        with self._cond:
            self._cond.wait_for(lambda: self._state in settled, timeout=timeout)
            return self._state == KernelState.READY

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self, interpreter: Optional[str] = None) -> Future:
        """
        Launch the interpreter and perform the handshake in the background.

        Args:
            interpreter: Interpreter path; defaults to the one given at construction

        Returns:
            Future resolving to KernelInfo, or failing with KernelStartError
        """
        with self._cond:
            if self._state not in (KernelState.UNSTARTED, KernelState.TERMINATED):
                raise KernelNotReadyError(f"Cannot start a session that is {self._state.value}")
            self._state = KernelState.STARTING
            self._cond.notify_all()

        self.interpreter = interpreter or self.interpreter
        self.execution_count = 0
        self.error = None
        self.info = None
        self._stderr_tail.clear()
        self._sync_pending = False
        self._requests = queue.Queue()
        self._lines = queue.Queue()
        started: Future = Future()

        if not self.interpreter:
            return self._start_failed(started, KernelStartError("No interpreter selected"))

        env = os.environ.copy()
        env["TERM"] = "dumb"
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONIOENCODING"] = "utf-8"
        env.pop("TERM_PROGRAM", None)

        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        logger.info("Starting kernel %s", self.interpreter)
        try:
            self._process = subprocess.Popen(
                [self.interpreter, "-u", "-c", server_source()],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
                env=env,
                **kwargs,
            )
        except OSError as e:
            return self._start_failed(
                started, KernelStartError(f"Failed to launch {self.interpreter}: {e}")
            )

        self._threads = [
            threading.Thread(target=self._read_stdout, args=(self._process.stdout, self._lines),
                             name="cellpad-kernel-reader", daemon=True),
            threading.Thread(target=self._read_stderr, args=(self._process.stderr,),
                             name="cellpad-kernel-stderr", daemon=True),
            threading.Thread(target=self._run, args=(started, self._requests, self._lines),
                             name="cellpad-kernel-worker", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return started

    def _start_failed(self, started: Future, error: KernelStartError) -> Future:
        self._fail(error)
        started.set_exception(error)
        return started

    def restart(self) -> Future:
        """Shut down the current process and start a fresh one with the same interpreter."""
        self.shutdown()
        return self.start()

    def shutdown(self):
        """
        Stop the kernel process and move to TERMINATED.

        Requests still queued fail with KernelNotReadyError. Safe to call twice.
        """
        with self._cond:
            if self._state == KernelState.TERMINATED:
                return
            self._state = KernelState.TERMINATED
            self._cond.notify_all()
            process = self._process

        logger.info("Shutting down kernel %s", self.interpreter)
        self._requests.put(None)
        if process is not None:
            try:
                process.wait(timeout=self.shutdown_timeout)
            except subprocess.TimeoutExpired:
                process.terminate()
                try:
                    process.wait(timeout=self.shutdown_timeout)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=self.shutdown_timeout)
        self._drain_requests(KernelNotReadyError("Kernel session terminated"))
        self._inflight = None

    def _fail(self, error: Exception):
        """Move to ERRORED, kill the process and fail everything queued."""
        with self._cond:
            if self._state == KernelState.TERMINATED:
                return
            self.error = error
            self._state = KernelState.ERRORED
            self._cond.notify_all()
            process = self._process
        logger.error("Kernel %s failed: %s", self.interpreter, error)
        if process is not None and process.poll() is None:
            process.kill()
        self._drain_requests(error)
        self._inflight = None

    def _drain_requests(self, error: Exception):
        while True:
            try:
                pending = self._requests.get_nowait()
            except queue.Empty:
                return
            if pending is not None and not pending.future.done():
                pending.future.set_exception(error)

    def __enter__(self):
        self.start().result()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def execute(self, code: str, on_chunk: Optional[ChunkCallback] = None) -> Future:
        """
        Run user code in the kernel.

        Args:
            code: Source to execute
            on_chunk: Called (on the worker thread) for each stdout/stderr chunk

        Returns:
            Future resolving to a Reply carrying the execution counter value

        Raises:
            KernelBusyError: another execute is in flight
            KernelNotReadyError: the session is not READY
        """
        with self._cond:
            if self._state == KernelState.BUSY:
                raise KernelBusyError("Kernel is busy; wait for the running cell to finish")
            if self._state != KernelState.READY:
                raise KernelNotReadyError(f"Kernel is {self._state.value}")
            self.execution_count += 1
            request_id = self._new_id()
            pending = _Pending(
                request_id=request_id,
                kind=protocol.EXECUTE,
                frame=protocol.execute_request(request_id, code),
                on_chunk=on_chunk,
                execution_count=self.execution_count,
            )
            self._inflight = pending
            self._interrupt_requested = False
            self._state = KernelState.BUSY
            self._cond.notify_all()
        self._requests.put(pending)
        return pending.future

    def introspect(self, query: str, **args: Any) -> Future:
        """
        Send a privileged introspection query.

        It is queued behind any in-flight request and does not change the
        session state or the execution counter.

        Returns:
            Future resolving to a Reply whose ``data`` holds the answer
        """
        with self._cond:
            if self._state not in (KernelState.READY, KernelState.BUSY):
                raise KernelNotReadyError(f"Kernel is {self._state.value}")
            request_id = self._new_id()
            pending = _Pending(
                request_id=request_id,
                kind=protocol.INTROSPECT,
                frame=protocol.introspect_request(request_id, query, args),
            )
        self._requests.put(pending)
        return pending.future

    def interrupt(self) -> bool:
        """
        Cancel the running cell.

        The execute future then resolves to an interrupted Reply and the
        session returns to READY once the kernel acknowledges.

        Returns:
            True if an interrupt was sent, False if nothing was running
        """
        with self._cond:
            if self._state != KernelState.BUSY or self._process is None:
                return False
            self._interrupt_requested = True
            process = self._process
        logger.info("Interrupting kernel %s", self.interpreter)
        try:
            if sys.platform == "win32":
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            logger.debug("Kernel process already gone")
        return True

    # ------------------------------------------------------------------ #
    # Background threads
    # ------------------------------------------------------------------ #

    @staticmethod
    def _read_stdout(stream, lines: queue.Queue):
        for line in iter(stream.readline, b""):
            lines.put(line)
        lines.put(None)

    def _read_stderr(self, stream):
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", "replace").rstrip()
            self._stderr_tail.append(text)
            logger.debug("kernel stderr: %s", text)

    def _run(self, started: Future, requests: queue.Queue, lines: queue.Queue):
        try:
            self.info = self._handshake(lines)
        except KernelStartError as e:
            self._fail(e)
            started.set_exception(e)
            return
        if not self._set_state(KernelState.READY, only_from=(KernelState.STARTING,)):
            started.set_exception(KernelNotReadyError("Kernel session terminated during start"))
            return
        logger.info("Kernel ready: %s (pid %s, Python %s)",
                    self.interpreter, self.info.pid, self.info.version)
        started.set_result(self.info)

        while True:
            pending = requests.get()
            if pending is None:
                self._write_quietly(protocol.shutdown_request(self._new_id()))
                return
            try:
                reply = self._roundtrip(pending, lines)
            except KernelProtocolError as e:
                # ERRORED before the caller sees the failure
                self._fail(e)
                if not pending.future.done():
                    pending.future.set_exception(e)
                return
            self._complete(pending, reply)

    def _handshake(self, lines: queue.Queue) -> KernelInfo:
        try:
            line = lines.get(timeout=self.handshake_timeout)
        except queue.Empty:
            raise KernelStartError(
                f"Kernel {self.interpreter} did not answer within {self.handshake_timeout}s"
            )
        if line is None:
            code = self._process.wait() if self._process else None
            tail = "\n".join(self._stderr_tail)
            raise KernelStartError(f"Kernel {self.interpreter} exited with code {code}\n{tail}".rstrip())
        try:
            frame = protocol.decode_frame(line)
        except KernelProtocolError as e:
            raise KernelStartError(f"Bad handshake from {self.interpreter}: {e}") from e
        if frame["type"] != protocol.READY:
            raise KernelStartError(f"Unexpected handshake frame: {frame['type']}")
        return KernelInfo(
            interpreter=self.interpreter,
            pid=frame.get("pid"),
            version=frame.get("version"),
            executable=frame.get("executable"),
        )

    def _roundtrip(self, pending: _Pending, lines: queue.Queue) -> Reply:
        if pending.kind == protocol.EXECUTE:
            if self._sync_pending:
                self._sync(lines)
            if self._interrupt_requested:
                # interrupted before it reached the kernel
                reply = Reply(request_id=pending.request_id, status=protocol.STATUS_ERROR)
                reply.mark_interrupted()
                return reply
        return self._exchange(pending, lines)

    def _sync(self, lines: queue.Queue):
        """Ping the kernel so it drops a SIGINT that landed after its last reply."""
        with self._cond:
            request_id = self._new_id()
        ping = _Pending(
            request_id=request_id,
            kind=protocol.INTROSPECT,
            frame=protocol.introspect_request(request_id, protocol.PING),
        )
        self._exchange(ping, lines)
        self._sync_pending = False

    def _exchange(self, pending: _Pending, lines: queue.Queue) -> Reply:
        try:
            self._process.stdin.write(protocol.encode_frame(pending.frame))
            self._process.stdin.flush()
        except (OSError, ValueError) as e:
            raise KernelProtocolError(f"Cannot write to kernel: {e}") from e

        chunks: list[StreamChunk] = []
        while True:
            line = lines.get()
            if line is None:
                code = self._process.wait()
                raise KernelProtocolError(f"Kernel process exited with code {code}")
            frame = protocol.decode_frame(line)
            if frame.get("id") != pending.request_id:
                raise KernelProtocolError(
                    f"Expected frame for request {pending.request_id}, got {frame.get('id')!r}"
                )
            if frame["type"] == protocol.STREAM:
                chunk = StreamChunk(name=frame.get("name", "stdout"), text=frame.get("text", ""))
                chunks.append(chunk)
                if pending.on_chunk is not None:
                    try:
                        pending.on_chunk(chunk)
                    except Exception:
                        logger.exception("Output callback failed")
            elif frame["type"] == protocol.REPLY:
                return Reply.from_frame(frame, chunks)
            else:
                raise KernelProtocolError(f"Unexpected frame type {frame['type']!r}")

    def _complete(self, pending: _Pending, reply: Reply):
        if pending.kind == protocol.EXECUTE:
            reply.execution_count = pending.execution_count
            with self._cond:
                interrupted = self._interrupt_requested
                self._interrupt_requested = False
                if interrupted:
                    self._sync_pending = True
                self._inflight = None
            if interrupted or reply.error_kind == protocol.INTERRUPTED:
                reply.mark_interrupted()
            # READY before the caller sees the result
            self._set_state(KernelState.READY, only_from=(KernelState.BUSY,))
        pending.future.set_result(reply)

    def _write_quietly(self, frame: dict[str, Any]):
        if self._process is None or self._process.poll() is not None:
            return
        try:
            self._process.stdin.write(protocol.encode_frame(frame))
            self._process.stdin.flush()
            self._process.stdin.close()
        except (OSError, ValueError) as e:
            logger.debug("Kernel pipe already closed: %s", e)
