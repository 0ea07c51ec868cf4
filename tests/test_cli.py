"""
Tests for the cellpad command line and the interactive editor's document operations.
"""

import sys
from concurrent.futures import Future
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from cellpad import __version__, cli
from cellpad.cli import CellpadEditor, kernel_table, main
from cellpad.coordinator import ExecutionRecord, RecordStatus
from cellpad.discovery import KernelSpec
from cellpad.errors import KernelBusyError
from cellpad.kernel import KernelState
from cellpad.namespace import NamespaceSnapshot


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestMainOptions:
    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_list_kernels(self):
        result = CliRunner().invoke(main, ["--list-kernels"])
        assert result.exit_code == 0, result.output

    def test_bad_log_level(self):
        result = CliRunner().invoke(main, ["--log-level", "LOUD", "--list-kernels"])
        assert result.exit_code == 2

    def test_blank_delimiter(self):
        result = CliRunner().invoke(main, ["--delimiter", "   ", "--list-kernels"])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.output

    def test_missing_execute_file(self, tmp_path):
        result = CliRunner().invoke(main, ["--execute", str(tmp_path / "nope.py")])
        assert result.exit_code == 2

    def test_file_and_execute_together(self, tmp_path):
        path = write(tmp_path / "cells.py", "x = 1\n")
        result = CliRunner().invoke(main, [str(path), "--execute", str(path)])
        assert result.exit_code == 2
        assert "not both" in result.output


class TestHeadlessRun:
    def _run(self, path, *args):
        return CliRunner().invoke(
            main, ["--execute", str(path), "--interpreter", sys.executable, *args]
        )

    def test_success(self, tmp_path):
        path = write(tmp_path / "ok.py", "print('hello')\n# %% second\nvalue = 2 + 2\nvalue\n")
        result = self._run(path)
        assert result.exit_code == 0, result.output
        assert "hello" in result.output
        assert "4" in result.output
        assert "All 2 cells executed successfully" in result.output

    def test_failure_stops_run(self, tmp_path):
        path = write(
            tmp_path / "bad.py",
            "print('first')\n# %%\nraise ValueError('nope')\n# %%\nprint('never')\n",
        )
        result = self._run(path)
        assert result.exit_code == 1
        assert "first" in result.output
        assert "ValueError" in result.output
        assert "never" not in result.output
        assert "2/3 cells executed" in result.output

    def test_missing_interpreter(self, tmp_path):
        path = write(tmp_path / "ok.py", "x = 1\n")
        result = CliRunner().invoke(
            main, ["--execute", str(path), "--interpreter", str(tmp_path / "no-python")]
        )
        assert result.exit_code == 1
        assert "Kernel error" in result.output

    def test_interpreter_option_beats_shebang(self, tmp_path):
        path = write(tmp_path / "shebang.py", "#!/no/such/python\nprint('ran')\n")
        result = self._run(path)
        assert result.exit_code == 0, result.output
        assert "ran" in result.output

    def test_custom_delimiter(self, tmp_path):
        path = write(tmp_path / "cells.py", "a = 1\n#-- next\nprint(a + 1)\n")
        result = self._run(path, "--delimiter", "#--")
        assert result.exit_code == 0, result.output
        assert "All 2 cells executed successfully" in result.output


@pytest.fixture
def editor():
    """CellpadEditor over a two-cell document with a mocked kernel session."""
    session = MagicMock()
    session.state = KernelState.READY
    session.interpreter = "/usr/bin/python3"
    return CellpadEditor("a = 1\n# %% second\nb = 2\n", None, session)


class TestEditorDocument:
    def test_cells(self, editor):
        assert len(editor.cells) == 2
        assert editor.cells[1].label == "second"

    def test_add_cell_after(self, editor):
        editor.add_cell_after()
        assert editor.document == "a = 1\n# %%\n# %% second\nb = 2\n"
        assert editor.current_cell_index == 1
        assert len(editor.cells) == 3
        assert editor.modified

    def test_add_cell_before_first(self, editor):
        editor.add_cell_before()
        assert editor.document == "a = 1\n# %% second\nb = 2\n"
        assert not editor.modified

    def test_add_cell_before(self, editor):
        editor.current_cell_index = 1
        editor.add_cell_before()
        assert editor.document == "a = 1\n# %%\n# %% second\nb = 2\n"

    def test_delete_cell(self, editor):
        editor.current_cell_index = 1
        with patch("cellpad.cli.Confirm.ask", return_value=True):
            editor.delete_current_cell()
        assert editor.document == "a = 1\n"
        assert editor.current_cell_index == 0

    def test_delete_cancelled(self, editor):
        with patch("cellpad.cli.Confirm.ask", return_value=False):
            editor.delete_current_cell()
        assert len(editor.cells) == 2

    def test_edit_first_cell(self, editor):
        with patch.object(cli.console, "input", side_effect=["c = 3", "d = 4", ""]):
            editor.edit_current_cell()
        assert editor.document == "c = 3\nd = 4\n# %% second\nb = 2\n"

    def test_edit_keeps_delimiter_line(self, editor):
        editor.current_cell_index = 1
        with patch.object(cli.console, "input", side_effect=["b = 20", ""]):
            editor.edit_current_cell()
        assert editor.document == "a = 1\n# %% second\nb = 20\n"

    def test_edit_cancel(self, editor):
        with patch.object(cli.console, "input", side_effect=["cancel"]):
            editor.edit_current_cell()
        assert not editor.modified

    def test_save_writes_verbatim(self, editor, tmp_path):
        editor.path = tmp_path / "cells.py"
        editor.add_cell_after()
        editor.save_document()
        assert editor.path.read_text(encoding="utf-8") == editor.document
        assert not editor.modified


class TestEditorExecution:
    def test_busy_kernel_message(self, editor):
        with patch.object(editor.coordinator, "execute_cell", side_effect=KernelBusyError("busy")):
            editor.execute_current_cell()
        assert "busy" in editor._status_message

    def test_executed_message(self, editor):
        future = Future()
        future.set_result(ExecutionRecord(cell_index=0, status=RecordStatus.SUCCEEDED))
        with patch.object(editor.coordinator, "execute_cell", return_value=future):
            editor.execute_current_cell()
        assert "Cell 0 executed" in editor._status_message

    def test_error_message(self, editor):
        future = Future()
        future.set_result(ExecutionRecord(cell_index=0, status=RecordStatus.FAILED,
                                          error_kind="NameError", error_message="name 'q' is not defined"))
        with patch.object(editor.coordinator, "execute_cell", return_value=future):
            editor.execute_current_cell()
        assert "NameError" in editor._status_message

    def test_execute_all_stops_at_failure(self, editor):
        results = iter([
            ExecutionRecord(cell_index=0, status=RecordStatus.FAILED, error_kind="ValueError"),
        ])

        def fake_execute(index):
            future = Future()
            future.set_result(next(results))
            return future

        with patch.object(editor.coordinator, "execute_cell", side_effect=fake_execute) as execute:
            editor.execute_all_cells()
        assert execute.call_count == 1
        assert "stopped at cell 0" in editor._status_message


class TestEditorCompletion:
    def test_complete_inserts_candidate(self, editor):
        editor.store.publish(NamespaceSnapshot.from_payload(
            {"symbols": {"price": {"type": "float"}}}
        ))
        with patch("cellpad.cli.Prompt.ask", side_effect=["pri", "0"]):
            editor.complete()
        assert editor.document == "a = 1\nprice\n# %% second\nb = 2\n"

    def test_no_candidates(self, editor):
        with patch("cellpad.cli.Prompt.ask", side_effect=["zzzq"]):
            editor.complete()
        assert "No completions" in editor._status_message
        assert not editor.modified


class TestEditorLoop:
    def test_navigate_and_quit(self, editor):
        with patch.object(cli.console, "input", side_effect=["j", "q"]):
            editor.run()
        assert editor.current_cell_index == 1
        assert not editor.running

    def test_unknown_command(self, editor):
        with patch.object(cli.console, "input", side_effect=["zz", "q"]), \
                patch.object(editor, "display_cells") as display:
            editor.run()
        assert display.call_count == 2


def test_kernel_table():
    table = kernel_table([KernelSpec(name="python3", path="/usr/bin/python3", source="path")])
    assert table.row_count == 1
