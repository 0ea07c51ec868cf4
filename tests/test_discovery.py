"""
Tests for interpreter discovery, shebang parsing and interpreter selection.
"""

import sys

import pytest

from cellpad.config import Settings
from cellpad.discovery import (
    discover_interpreters,
    find_python_in_env,
    parse_shebang,
    resolve_interpreter,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX interpreter layout")


def make_executable(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def project(tmp_path):
    """A project directory containing a .venv."""
    python = make_executable(tmp_path / "project" / ".venv" / "bin" / "python")
    return tmp_path / "project", python


class TestParseShebang:
    @pytest.mark.parametrize("document, expected", [
        ("#!/usr/bin/env python3\nprint(1)\n", "python3"),
        ("#!/usr/bin/env -S python3 -u\n", "python3"),
        ("#!/usr/bin/env PYTHONHASHSEED=0 python3.12\n", "python3.12"),
        ("#!/opt/py/bin/python\n", "/opt/py/bin/python"),
        ("#! /opt/py/bin/python -O\n", "/opt/py/bin/python"),
    ])
    def test_shebangs(self, document, expected):
        assert parse_shebang(document) == expected

    @pytest.mark.parametrize("document", [
        "",
        "import os\n",
        "#!\n",
        "#!/usr/bin/env\n",
        "# comment\n#!/usr/bin/python\n",
    ])
    def test_no_shebang(self, document):
        assert parse_shebang(document) is None


class TestDiscovery:
    def test_find_python_in_env(self, project):
        root, python = project
        assert find_python_in_env(root / ".venv") == python
        assert find_python_in_env(root / "missing") is None

    def test_venv_in_cwd(self, project):
        root, python = project
        specs = discover_interpreters(cwd=root, env={"PATH": ""})
        assert len(specs) == 1
        assert specs[0].path == str(python)
        assert specs[0].source == "venv"

    def test_venv_next_to_document(self, tmp_path, project):
        root, python = project
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        specs = discover_interpreters(cwd=elsewhere, document_dir=root, env={"PATH": ""})
        assert [s.path for s in specs] == [str(python)]

    def test_path_scan(self, tmp_path):
        bindir = tmp_path / "bin"
        make_executable(bindir / "python3")
        make_executable(bindir / "python3.12")
        make_executable(bindir / "python3-config")
        (bindir / "python").write_text("not executable")

        specs = discover_interpreters(cwd=tmp_path, env={"PATH": str(bindir)})
        assert [s.name for s in specs] == ["python3", "python3.12"]
        assert {s.source for s in specs} == {"path"}

    def test_virtual_env_deduplicated(self, project):
        root, python = project
        env = {"PATH": str(python.parent), "VIRTUAL_ENV": str(root / ".venv")}
        specs = discover_interpreters(cwd=root, env=env)
        assert len(specs) == 1
        assert specs[0].source == "venv"

    def test_conda_prefix(self, tmp_path):
        python = make_executable(tmp_path / "conda" / "envs" / "ds" / "bin" / "python")
        empty = tmp_path / "empty"
        empty.mkdir()
        specs = discover_interpreters(
            cwd=empty, env={"PATH": "", "CONDA_PREFIX": str(tmp_path / "conda" / "envs" / "ds")}
        )
        assert specs[0].path == str(python)
        assert specs[0].source == "conda"
        assert specs[0].name == "ds"

    def test_venvs_come_before_path(self, tmp_path, project):
        root, python = project
        bindir = tmp_path / "bin"
        make_executable(bindir / "python3")
        specs = discover_interpreters(cwd=root, env={"PATH": str(bindir)})
        assert [s.source for s in specs] == ["venv", "path"]


class TestResolveInterpreter:
    def test_cli_is_used_as_given(self):
        spec = resolve_interpreter(cli="/no/such/python", document="#!/usr/bin/env python3\n")
        assert spec.source == "cli"
        assert spec.path == "/no/such/python"

    def test_shebang(self, tmp_path):
        python = make_executable(tmp_path / "py" / "python")
        spec = resolve_interpreter(document=f"#!{python}\nprint(1)\n")
        assert spec.source == "shebang"
        assert spec.path == str(python)

    def test_missing_shebang_falls_through_to_config(self, tmp_path):
        python = make_executable(tmp_path / "py" / "python")
        settings = Settings(interpreter=str(python))
        spec = resolve_interpreter(document="#!/no/such/python\n", settings=settings)
        assert spec.source == "config"
        assert spec.path == str(python)

    def test_custom_precedence(self, tmp_path):
        python = make_executable(tmp_path / "py" / "python")
        settings = Settings(interpreter=str(python), interpreter_precedence=["config", "cli"])
        spec = resolve_interpreter(cli="/other/python", settings=settings)
        assert spec.source == "config"

    def test_discovery(self, project):
        root, python = project
        settings = Settings(interpreter_precedence=["discovery"])
        spec = resolve_interpreter(settings=settings, cwd=root)
        assert spec.path == str(python)
        assert spec.source == "venv"

    def test_fallback_to_current_interpreter(self):
        settings = Settings(interpreter_precedence=["cli", "config"])
        spec = resolve_interpreter(settings=settings)
        assert spec.source == "default"
        assert spec.path == sys.executable
