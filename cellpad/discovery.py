"""
Interpreter discovery and selection.

Candidates come from virtual environments next to the working directory or
the document, the active $VIRTUAL_ENV / $CONDA_PREFIX, and python executables
on PATH. The interpreter actually used is picked by walking the configured
precedence list (cli, shebang, config, discovery) with sys.executable as the
last resort.
"""

import logging
import os
import re
import shlex
import shutil
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from cellpad.config import Settings

logger = logging.getLogger(__name__)

VENV_NAMES = (".venv", "venv", "env", ".env")
_PYTHON_NAME = re.compile(r"^python(\d+(\.\d+)?)?(\.exe)?$")


class KernelSpec(BaseModel):
    """A selectable interpreter."""
    name: str
    path: str
    source: str

    def __str__(self) -> str:
        return f"{self.name} ({self.path})"


def find_python_in_env(env_path: Path) -> Optional[Path]:
    """Python executable inside a virtualenv or conda prefix, if there is one."""
    if not env_path.is_dir():
        return None
    for candidate in (env_path / "bin" / "python", env_path / "Scripts" / "python.exe",
                      env_path / "python.exe"):
        if candidate.is_file():
            return candidate
    return None


def _python_on_path(env: dict) -> list[Path]:
    found = []
    for directory in env.get("PATH", "").split(os.pathsep):
        if not directory:
            continue
        try:
            entries = sorted(os.listdir(directory))
        except OSError:
            continue
        for entry in entries:
            if not _PYTHON_NAME.match(entry):
                continue
            path = Path(directory) / entry
            if path.is_file() and os.access(path, os.X_OK):
                found.append(path)
    return found


def discover_interpreters(
    cwd: Optional[Path] = None,
    document_dir: Optional[Path] = None,
    env: Optional[dict] = None,
) -> list[KernelSpec]:
    """
    List interpreters available to run a kernel.

    Args:
        cwd: Working directory to look for virtualenvs in
        document_dir: Directory of the opened document, also searched
        env: Environment mapping (defaults to os.environ)

    Returns:
        KernelSpecs, virtual environments first, de-duplicated by resolved path
    """
    env = os.environ if env is None else env
    cwd = Path(cwd) if cwd else Path.cwd()
    candidates: list[tuple[Path, str, str]] = []

    directories = [cwd]
    if document_dir is not None and Path(document_dir).resolve() != cwd.resolve():
        directories.append(Path(document_dir))
    for directory in directories:
        for venv_name in VENV_NAMES:
            python = find_python_in_env(directory / venv_name)
            if python:
                candidates.append((python, f"{venv_name} ({directory.name or directory})", "venv"))

    for variable, source in (("VIRTUAL_ENV", "virtualenv"), ("CONDA_PREFIX", "conda")):
        prefix = env.get(variable)
        if prefix:
            python = find_python_in_env(Path(prefix))
            if python:
                candidates.append((python, Path(prefix).name, source))

    for python in _python_on_path(env):
        candidates.append((python, python.name, "path"))

    specs = []
    seen = set()
    for path, name, source in candidates:
        try:
            key = path.resolve()
        except OSError:
            key = path
        if key in seen:
            continue
        seen.add(key)
        specs.append(KernelSpec(name=name, path=str(path), source=source))
    logger.debug("Discovered %d interpreters", len(specs))
    return specs


def parse_shebang(document: str) -> Optional[str]:
    """
    Interpreter named by the document's shebang line.

    Supports ``#!/usr/bin/env [-S] python3`` and ``#!/abs/path/python``.

    Returns:
        The interpreter command or path, or None if there is no usable shebang
    """
    first = document.split("\n", 1)[0].strip()
    if not first.startswith("#!"):
        return None
    try:
        parts = shlex.split(first[2:])
    except ValueError:
        return None
    if not parts:
        return None
    if Path(parts[0]).name == "env":
        args = [p for p in parts[1:] if not p.startswith("-") and "=" not in p]
        return args[0] if args else None
    return parts[0]


def _usable(interpreter: str) -> Optional[str]:
    if os.sep in interpreter or (os.altsep and os.altsep in interpreter):
        return interpreter if Path(interpreter).is_file() else None
    return shutil.which(interpreter)


def resolve_interpreter(
    cli: Optional[str] = None,
    document: Optional[str] = None,
    settings: Optional[Settings] = None,
    cwd: Optional[Path] = None,
    document_dir: Optional[Path] = None,
) -> KernelSpec:
    """
    Choose the interpreter for a new kernel.

    Sources are tried in ``settings.interpreter_precedence`` order. An
    explicit --interpreter is used as given; shebang and config values are
    skipped when they do not point at an existing executable.

    Returns:
        KernelSpec whose source names where the choice came from
    """
    settings = settings or Settings()
    for source in settings.interpreter_precedence:
        if source == "cli" and cli:
            return KernelSpec(name=Path(cli).name, path=cli, source="cli")
        if source == "shebang" and document:
            named = parse_shebang(document)
            path = _usable(named) if named else None
            if path:
                return KernelSpec(name=named, path=path, source="shebang")
            if named:
                logger.warning("Shebang interpreter %s not found; ignoring it", named)
        if source == "config" and settings.interpreter:
            path = _usable(settings.interpreter)
            if path:
                return KernelSpec(name=Path(settings.interpreter).name, path=path, source="config")
            logger.warning("Configured interpreter %s not found; ignoring it", settings.interpreter)
        if source == "discovery":
            found = discover_interpreters(cwd=cwd, document_dir=document_dir)
            if found:
                return found[0]
    return KernelSpec(name=Path(sys.executable).name, path=sys.executable, source="default")
