"""
Error taxonomy for cellpad.

Kernel-level errors (start/protocol) are fatal to a session and require an
explicit restart. Everything else is scoped to one cell or one completion
request.
"""

from typing import Optional


class CellpadError(Exception):
    """Base class for all cellpad errors."""


class KernelStartError(CellpadError):
    """The interpreter is missing, failed to launch, or never sent its handshake."""


class KernelProtocolError(CellpadError):
    """The kernel sent a malformed or unsynchronized frame, or died mid-request."""


class KernelBusyError(CellpadError):
    """An execute request arrived while another one is still in flight."""


class KernelNotReadyError(CellpadError):
    """The session is not in a state that accepts requests."""


class ExecutionError(CellpadError):
    """User code raised inside the kernel."""

    def __init__(self, kind: str, message: str, traceback: Optional[list[str]] = None):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.traceback = traceback or []


class CellInterruptedError(ExecutionError):
    """The running cell was cancelled by the user."""

    def __init__(self, message: str = "Execution interrupted"):
        super().__init__("Interrupted", message)


class SchemaRefreshError(CellpadError):
    """An introspection query failed; the previous snapshot is kept."""
