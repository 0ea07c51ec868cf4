"""
Kernel server: runs inside the user's interpreter and executes cells.

KernelSession launches this file's source with ``<python> -u -c <source>``,
so it only uses the standard library and must not import cellpad. It speaks
the newline-delimited JSON protocol described in cellpad/protocol.py over
private copies of the original stdin and stdout file descriptors. fd 1 is
pointed at stderr so output written by extension modules cannot corrupt the
framing, and fd 0 at the null device so cells reading stdin see end of file
instead of request frames.
"""

import ast
import builtins
import inspect
import json
import linecache
import os
import pprint
import signal
import sys
import traceback

MAX_ATTRIBUTES = 400
MAX_FUNCTIONS = 2000

_proto = os.fdopen(os.dup(1), "wb")
os.dup2(2, 1)
_requests = os.fdopen(os.dup(0), "rb")
_null = os.open(os.devnull, os.O_RDONLY)
os.dup2(_null, 0)
os.close(_null)

_state = {
    "request_id": None,
    "executing": False,
    "sending": False,
    "pending_interrupt": False,
    "cell_count": 0,
}

_user_ns = {"__name__": "__main__", "__builtins__": builtins, "__doc__": None}


def _send(frame):
    _state["sending"] = True
    try:
        _proto.write((json.dumps(frame, default=str) + "\n").encode("utf-8"))
        _proto.flush()
    finally:
        _state["sending"] = False
    if _state["pending_interrupt"] and _state["executing"]:
        _state["pending_interrupt"] = False
        raise KeyboardInterrupt


def _on_interrupt(signum, frame):
    # outside user code the interrupt waits for the next cell to start
    if not _state["executing"] or _state["sending"]:
        _state["pending_interrupt"] = True
        return
    raise KeyboardInterrupt


class _StreamWriter(object):
    """File-like object that forwards every write as a stream frame."""

    def __init__(self, name):
        self.name = name
        self.encoding = "utf-8"
        self.errors = "replace"

    def write(self, text):
        if not isinstance(text, str):
            raise TypeError("write() argument must be str, not %s" % type(text).__name__)
        if text:
            _send({"id": _state["request_id"], "type": "stream", "name": self.name, "text": text})
        return len(text)

    def writelines(self, lines):
        for line in lines:
            self.write(line)

    def flush(self):
        pass

    def isatty(self):
        return False

    def writable(self):
        return True

    def fileno(self):
        raise OSError("stream is not backed by a file descriptor")


def _reply(status, **fields):
    frame = {"id": _state["request_id"], "type": "reply", "status": status}
    frame.update({k: v for k, v in fields.items() if v is not None})
    _send(frame)


def _format_result(value):
    if isinstance(value, (list, dict, tuple, set, frozenset)):
        return pprint.pformat(value, width=80, compact=True)
    return repr(value)


def _format_traceback(exc):
    tb = exc.__traceback__
    # drop the server's own frames in front of the cell code
    while tb is not None and not tb.tb_frame.f_code.co_filename.startswith("<cell"):
        tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb)).splitlines()


def _run_cell(code):
    _state["cell_count"] += 1
    filename = "<cell-%d>" % _state["cell_count"]
    linecache.cache[filename] = (len(code), None, code.splitlines(True), filename)

    tree = ast.parse(code, filename=filename, mode="exec")
    last = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = ast.Expression(tree.body.pop().value)
    exec(compile(tree, filename, "exec"), _user_ns)
    if last is not None:
        return eval(compile(last, filename, "eval"), _user_ns)
    return None


def _handle_execute(request):
    code = request.get("code") or ""
    saved = sys.stdout, sys.stderr
    sys.stdout = _StreamWriter("stdout")
    sys.stderr = _StreamWriter("stderr")
    try:
        try:
            _state["executing"] = True
            if _state["pending_interrupt"]:
                raise KeyboardInterrupt
            value = _run_cell(code)
        finally:
            _state["executing"] = False
            _state["pending_interrupt"] = False
    except KeyboardInterrupt:
        sys.stdout, sys.stderr = saved
        _reply("error", error_kind="Interrupted", message="Execution interrupted")
        return
    except SystemExit as e:
        sys.stdout, sys.stderr = saved
        _reply("error", error_kind="SystemExit", message=str(e.code), traceback=_format_traceback(e))
        return
    except BaseException as e:
        sys.stdout, sys.stderr = saved
        _reply("error", error_kind=type(e).__name__, message=str(e), traceback=_format_traceback(e))
        return
    sys.stdout, sys.stderr = saved

    if value is None:
        _reply("ok")
        return
    _user_ns["_"] = value
    try:
        result = _format_result(value)
    except Exception as e:
        result = "<repr failed: %s: %s>" % (type(e).__name__, e)
    _reply("ok", result=result)


# --------------------------------------------------------------------------- #
# Introspection
# --------------------------------------------------------------------------- #

def _type_name(cls):
    module = getattr(cls, "__module__", None) or "builtins"
    name = getattr(cls, "__qualname__", None) or getattr(cls, "__name__", None) or repr(cls)
    if module == "builtins":
        return name
    return "%s.%s" % (module, name)


def _type_tag(obj):
    return _type_name(type(obj))


def _annotation_tag(annotation):
    if annotation is inspect.Signature.empty or annotation is None:
        return None
    if isinstance(annotation, str):
        return annotation
    if isinstance(annotation, type):
        return _type_name(annotation)
    return None


def _return_tag(func):
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return None
    return _annotation_tag(sig.return_annotation)


def _public_names(obj):
    try:
        names = dir(obj)
    except Exception:
        return []
    return sorted(n for n in names if isinstance(n, str) and not n.startswith("_"))[:MAX_ATTRIBUTES]


def _kind(obj):
    if inspect.ismodule(obj):
        return "module"
    if inspect.isclass(obj):
        return "class"
    if inspect.isroutine(obj):
        return "function"
    return "instance"


def _describe(obj):
    kind = _kind(obj)
    info = {
        "type": "module" if kind == "module" else _type_tag(obj),
        "kind": kind,
        "attributes": _public_names(obj),
        "members": {},
        "returns": {},
    }
    if kind == "module":
        info["module"] = obj.__name__
    elif kind == "class":
        info["call_returns"] = _type_name(obj)
    elif kind == "function":
        tag = _return_tag(obj)
        if tag:
            info["call_returns"] = tag

    for name in info["attributes"]:
        # getattr_static never runs properties on the user's objects
        try:
            member = inspect.getattr_static(obj, name)
        except AttributeError:
            continue
        if isinstance(member, (staticmethod, classmethod)):
            member = member.__func__
        if isinstance(member, property):
            tag = _return_tag(member.fget) if member.fget else None
            if tag:
                info["members"][name] = tag
        elif inspect.ismodule(member):
            info["members"][name] = "module"
        elif inspect.isclass(member):
            info["returns"][name] = _type_name(member)
        elif callable(member) or inspect.ismethoddescriptor(member):
            tag = _return_tag(member)
            if tag:
                info["returns"][name] = tag
        elif inspect.isdatadescriptor(member):
            # value type unknown without running the descriptor
            continue
        else:
            info["members"][name] = _type_tag(member)
    return info


def _namespace():
    symbols = {}
    for name, value in list(_user_ns.items()):
        if not isinstance(name, str) or name.startswith("_"):
            continue
        try:
            symbols[name] = _describe(value)
        except Exception as e:
            symbols[name] = {"type": _type_tag(value), "kind": "instance",
                             "attributes": [], "members": {}, "returns": {},
                             "error": str(e)}
    return {"symbols": symbols}


def _duckdb_connection(obj):
    if inspect.ismodule(obj):
        default = getattr(obj, "default_connection", None)
        obj = default() if callable(default) else default
    # a cursor keeps the user's pending result on the connection untouched
    return obj.cursor()


def _duckdb_schema(obj):
    con = _duckdb_connection(obj)
    try:
        rows = con.execute(
            "SELECT table_schema, table_name, column_name "
            "FROM information_schema.columns "
            "ORDER BY table_schema, table_name, ordinal_position"
        ).fetchall()
        tables = {}
        for schema, table, column in rows:
            qualified = table if schema == "main" else "%s.%s" % (schema, table)
            tables.setdefault(qualified, []).append(column)
        functions = [r[0] for r in con.execute(
            "SELECT DISTINCT function_name FROM duckdb_functions() ORDER BY function_name"
        ).fetchall()]
    finally:
        con.close()
    return tables, functions


def _sqlite_schema(con):
    tables = {}
    names = [r[0] for r in con.execute(
        "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') "
        "AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()]
    for name in names:
        quoted = '"%s"' % name.replace('"', '""')
        tables[name] = [r[1] for r in con.execute("PRAGMA table_info(%s)" % quoted).fetchall()]
    functions = []
    try:
        functions = sorted({r[0] for r in con.execute("PRAGMA function_list").fetchall()})
    except Exception:
        # function_list needs SQLite 3.30 with introspection pragmas enabled
        functions = []
    return tables, functions


def _spark_schema(spark):
    tables = {}
    for table in spark.catalog.listTables():
        tables[table.name] = [c.name for c in spark.catalog.listColumns(table.name)]
    functions = sorted({f.name for f in spark.catalog.listFunctions()})
    return tables, functions


_ENGINES = {
    "duckdb": _duckdb_schema,
    "sqlite": _sqlite_schema,
    "spark": _spark_schema,
}


def _schema(args):
    tables = []
    functions = set()
    errors = []
    for target in args.get("targets", []):
        name = target.get("name")
        engine = _ENGINES.get(target.get("engine"))
        if engine is None or name not in _user_ns:
            errors.append({"target": name, "message": "unknown engine or symbol"})
            continue
        try:
            found, funcs = engine(_user_ns[name])
        except Exception as e:
            errors.append({"target": name, "message": "%s: %s" % (type(e).__name__, e)})
            continue
        for table, columns in found.items():
            tables.append({"name": table, "columns": list(columns),
                           "engine": name, "engine_type": target.get("type", "")})
        functions.update(f for f in funcs if isinstance(f, str))
    return {"tables": tables, "functions": sorted(functions)[:MAX_FUNCTIONS], "errors": errors}


_QUERIES = {
    "namespace": lambda args: _namespace(),
    "schema": _schema,
    "ping": lambda args: {},
}


def _handle_introspect(request):
    handler = _QUERIES.get(request.get("query"))
    if handler is None:
        _reply("error", error_kind="UnknownQuery", message=str(request.get("query")))
        return
    try:
        data = handler(request.get("args") or {})
    except Exception as e:
        _reply("error", error_kind=type(e).__name__, message=str(e),
               traceback=traceback.format_exc().splitlines())
        return
    _reply("ok", data=data)


def main():
    sys.argv = [""]
    signal.signal(signal.SIGINT, _on_interrupt)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _on_interrupt)

    _send({"type": "ready", "pid": os.getpid(), "version": sys.version.split()[0],
           "executable": sys.executable})

    while True:
        line = _requests.readline()
        if not line:
            break
        if not line.strip():
            continue
        try:
            request = json.loads(line.decode("utf-8"))
        except ValueError as e:
            _state["request_id"] = None
            _reply("error", error_kind="ProtocolError", message=str(e))
            continue

        _state["request_id"] = request.get("id")
        kind = request.get("kind")
        if kind == "execute":
            _handle_execute(request)
        elif kind == "introspect":
            _handle_introspect(request)
            # a SIGINT meant for an earlier cell
            _state["pending_interrupt"] = False
        elif kind == "shutdown":
            _reply("ok")
            break
        else:
            _reply("error", error_kind="ProtocolError", message="unknown request kind %r" % kind)


if __name__ == "__main__":
    main()
