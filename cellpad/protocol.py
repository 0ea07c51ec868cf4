"""
Wire protocol between a KernelSession and the in-interpreter server.

Frames are single-line JSON objects separated by newlines. A request is
answered by zero or more ``stream`` frames followed by exactly one ``reply``
frame carrying the same id. The server is a standalone script
(kernel_server.py) and keeps its own copy of the frame names below.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from cellpad.errors import KernelProtocolError

# request kinds
EXECUTE = "execute"
INTROSPECT = "introspect"
SHUTDOWN = "shutdown"

# frame types
READY = "ready"
STREAM = "stream"
REPLY = "reply"

STATUS_OK = "ok"
STATUS_ERROR = "error"

# introspection queries
NAMESPACE = "namespace"
SCHEMA = "schema"
PING = "ping"

INTERRUPTED = "Interrupted"


def encode_frame(frame: dict[str, Any]) -> bytes:
    """Serialize a frame to one newline-terminated line."""
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


def decode_frame(line: bytes) -> dict[str, Any]:
    """
    Parse one line received from the kernel.

    Raises:
        KernelProtocolError: if the line is not a JSON object with a type
    """
    try:
        frame = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise KernelProtocolError(f"Malformed frame from kernel: {line[:200]!r}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise KernelProtocolError(f"Frame without a type: {line[:200]!r}")
    return frame


def execute_request(request_id: int, code: str) -> dict[str, Any]:
    return {"id": request_id, "kind": EXECUTE, "code": code}


def introspect_request(request_id: int, query: str, args: Optional[dict] = None) -> dict[str, Any]:
    return {"id": request_id, "kind": INTROSPECT, "query": query, "args": args or {}}


def shutdown_request(request_id: int) -> dict[str, Any]:
    return {"id": request_id, "kind": SHUTDOWN}


@dataclass
class StreamChunk:
    """One piece of stdout/stderr output."""
    name: str
    text: str

    def to_dict(self) -> dict:
        return {"name": self.name, "text": self.text}


@dataclass
class Reply:
    """Everything received for one request, terminal frame included."""
    request_id: int
    status: str
    chunks: list[StreamChunk] = field(default_factory=list)
    result: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    traceback: list[str] = field(default_factory=list)
    data: Any = None
    execution_count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def interrupted(self) -> bool:
        return self.error_kind == INTERRUPTED

    def mark_interrupted(self):
        """Discard any result and report the request as interrupted."""
        self.status = STATUS_ERROR
        self.result = None
        self.data = None
        self.error_kind = INTERRUPTED
        if not self.message:
            self.message = "Execution interrupted"

    @classmethod
    def from_frame(cls, frame: dict[str, Any], chunks: list[StreamChunk]) -> "Reply":
        """
        Build a Reply from a terminal frame.

        Raises:
            KernelProtocolError: if the status is missing or unknown
        """
        status = frame.get("status")
        if status not in (STATUS_OK, STATUS_ERROR):
            raise KernelProtocolError(f"Reply with invalid status: {status!r}")
        traceback = frame.get("traceback") or []
        if isinstance(traceback, str):
            traceback = traceback.splitlines()
        return cls(
            request_id=frame.get("id"),
            status=status,
            chunks=chunks,
            result=frame.get("result"),
            error_kind=frame.get("error_kind"),
            message=frame.get("message"),
            traceback=list(traceback),
            data=frame.get("data"),
        )
