"""
CLI interface for cellpad with Rich TUI.
"""

import sys
from concurrent.futures import Future, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.rule import Rule
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from cellpad import __version__
from cellpad.completion import CompletionProvider
from cellpad.config import Settings, load_settings
from cellpad.context import classify
from cellpad.coordinator import ExecutionCoordinator, ExecutionRecord, RecordStatus
from cellpad.discovery import KernelSpec, discover_interpreters, resolve_interpreter
from cellpad.errors import CellpadError, KernelBusyError, KernelNotReadyError
from cellpad.kernel import KernelSession
from cellpad.log import configure_logging
from cellpad.namespace import SnapshotStore
from cellpad.segmenter import Cell
from cellpad.utils import cell_title, format_duration, format_record, get_cell_status, truncate_text


console = Console()


def _wait(future: Future, session: KernelSession, message: str, poll_interval: float):
    """
    Wait for a future under a spinner; Ctrl-C interrupts the running cell.

    The front end never blocks on the kernel without polling, so a second
    Ctrl-C during a slow interrupt still reaches the kernel.
    """
    with Status(message, console=console, spinner="dots") as status:
        while True:
            try:
                return future.result(timeout=poll_interval)
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                if session.interrupt():
                    status.update("[yellow]Interrupting...[/yellow]")


def _make_session(spec: KernelSpec, settings: Settings) -> KernelSession:
    return KernelSession(
        spec.path,
        handshake_timeout=settings.handshake_timeout,
        shutdown_timeout=settings.shutdown_timeout,
    )


class CellpadEditor:
    """Interactive cell editor with Rich TUI."""

    def __init__(self, document: str, path: Optional[Path], session: KernelSession,
                 settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.path = path
        self.session = session
        self.store = SnapshotStore()
        self.coordinator = ExecutionCoordinator(
            session, self.store, document=document, delimiter=self.settings.delimiter
        )
        self.completer = CompletionProvider(
            self.store, sql_methods=self.settings.sql_methods, limit=self.settings.completion_limit
        )
        self.current_cell_index = 0
        self.running = True
        self.modified = False
        self._status_message = ""

    @property
    def document(self) -> str:
        return self.coordinator.document

    @property
    def cells(self) -> list[Cell]:
        return self.coordinator.cells

    def _set_message(self, message: str):
        """Set a status message to display on next render."""
        self._status_message = message

    def _set_document(self, text: str):
        self.coordinator.set_document(text)
        self.modified = True
        self.current_cell_index = min(self.current_cell_index, len(self.cells) - 1)

    # ------------------------------------------------------------------ #
    # Display
    # ------------------------------------------------------------------ #

    def display_header(self):
        """Display the header with document and kernel info."""
        name = self.path.name if self.path else "untitled"

        parts = [f"[bold white]{name}[/bold white]"]
        if self.modified:
            parts.append("[yellow]*modified[/yellow]")
        parts.append(f"[dim]Cell {self.current_cell_index + 1}/{len(self.cells)}[/dim]")

        state = self.session.state.value
        style = {"ready": "green", "busy": "yellow", "errored": "red"}.get(state, "dim")
        interpreter = self.session.interpreter or "no kernel"
        parts.append(f"[{style}]{state}[/{style}] [dim]{truncate_text(interpreter, 40)}[/dim]")

        console.print(Panel(
            "  |  ".join(parts),
            title="[bold blue]cellpad[/bold blue]",
            border_style="blue",
            padding=(0, 1),
        ))

    def display_cells(self):
        """Display all cells with the current cell highlighted."""
        console.clear()
        self.display_header()

        if self._status_message:
            console.print(f"  {self._status_message}")
            self._status_message = ""

        console.print()
        records = self.coordinator.records
        for cell in self.cells:
            record = records[cell.index] if cell.index < len(records) else None
            self._display_cell(cell, record, cell.index == self.current_cell_index)

    def _display_cell(self, cell: Cell, record: Optional[ExecutionRecord], is_current: bool):
        status_char, status_style = get_cell_status(record)
        cursor = " > " if is_current else "   "
        exec_num = record.execution_count if record and record.execution_count else " "
        title_label = f"In [{exec_num}]"
        if cell.label:
            title_label += f"  {cell.label}"

        if is_current:
            border_style = "bright_green"
            title_style = "bold bright_green"
        elif status_char in ("err", "int"):
            border_style = "red"
            title_style = "red"
        elif status_char == "ok":
            border_style = "dim green"
            title_style = "dim green"
        else:
            border_style = "dim"
            title_style = "dim"

        subtitle = None
        if status_char != "--":
            subtitle = f"[{status_style}]{status_char}[/{status_style}]"
            if record and record.duration is not None:
                subtitle += f" [dim]{format_duration(record.duration)}[/dim]"

        if cell.body.strip():
            content = Syntax(cell.body.rstrip("\n"), "python", theme="monokai",
                             line_numbers=True, word_wrap=True)
        else:
            content = Text("(empty)", style="dim italic")

        console.print(Panel(
            content,
            title=f"[{title_style}]{cursor}{title_label}[/{title_style}]",
            title_align="left",
            subtitle=subtitle,
            subtitle_align="right",
            border_style=border_style,
            padding=(0, 1),
        ))

        rendered = format_record(record) if record else None
        if rendered is not None:
            failed = record.failed
            console.print(Panel(
                rendered,
                title="[red]Error[/red]" if failed else f"[blue]Out [{exec_num}][/blue]",
                title_align="left",
                border_style="red" if failed else "blue",
                padding=(0, 1),
            ))

    def display_command_bar(self):
        """Display compact command bar at bottom."""
        console.print()
        console.print(Rule(style="dim"))

        commands = [
            ("Enter", "Edit"),
            ("e", "Run"),
            ("E", "RunAll"),
            ("a/b", "Add"),
            ("d", "Del"),
            ("j/k", "Nav"),
            ("t", "Complete"),
            ("?", "Vars"),
            ("T", "Tables"),
            ("K", "Kernel"),
            ("s", "Save"),
            ("h", "Help"),
            ("q", "Quit"),
        ]

        bar = Text()
        for i, (key, action) in enumerate(commands):
            if i > 0:
                bar.append("  ", style="dim")
            bar.append(key, style="bold cyan")
            bar.append(f":{action}", style="dim")

        console.print(bar, justify="center")
        console.print(Rule(style="dim"))

    # ------------------------------------------------------------------ #
    # Editing
    # ------------------------------------------------------------------ #

    def _replace_body(self, cell: Cell, body: str):
        if body and not body.endswith("\n") and cell.index < len(self.cells) - 1:
            body += "\n"
        doc = self.document
        head = doc[:cell.start + cell.body_offset]
        if head and not head.endswith("\n"):
            head += "\n"
        self._set_document(head + body + doc[cell.end:])

    def edit_current_cell(self):
        """Replace the body of the current cell."""
        cell = self.cells[self.current_cell_index]

        console.print()
        console.print(f"[bold]Editing cell {cell.index}[/bold]")
        if cell.body.strip():
            console.print("[dim]Current content:[/dim]")
            console.print(Syntax(cell.body.rstrip("\n"), "python", theme="monokai", line_numbers=True))
            console.print()

        console.print("[dim]Enter new content (empty line to finish, 'cancel' to abort):[/dim]")

        lines = []
        line_num = 1
        while True:
            try:
                line = console.input(f"[green]{line_num:>3}[/green] | ")
                if line.strip() == "cancel":
                    self._set_message("[yellow]Edit cancelled[/yellow]")
                    return
                if line == "" and lines:
                    break
                lines.append(line)
                line_num += 1
            except KeyboardInterrupt:
                self._set_message("[yellow]Edit cancelled[/yellow]")
                return

        new_body = "\n".join(lines) + "\n"
        if new_body != cell.body:
            self._replace_body(cell, new_body)
            self._set_message("[green]Cell updated[/green]")
        else:
            self._set_message("[dim]No changes[/dim]")

    def add_cell_after(self):
        """Insert a delimiter line after the current cell."""
        cell = self.cells[self.current_cell_index]
        doc = self.document
        head = doc[:cell.end]
        if head and not head.endswith("\n"):
            head += "\n"
        self._set_document(head + f"{self.settings.delimiter}\n" + doc[cell.end:])
        self.current_cell_index = cell.index + 1
        self._set_message(f"[green]Added cell at position {self.current_cell_index}[/green]")

    def add_cell_before(self):
        """Insert a delimiter line before the current cell."""
        cell = self.cells[self.current_cell_index]
        if not cell.has_delimiter:
            self._set_message("[yellow]Cannot add a cell before the first cell[/yellow]")
            return
        doc = self.document
        self._set_document(doc[:cell.start] + f"{self.settings.delimiter}\n" + doc[cell.start:])
        self._set_message(f"[green]Added cell at position {cell.index}[/green]")

    def delete_current_cell(self):
        """Delete the current cell, delimiter line included."""
        cell = self.cells[self.current_cell_index]
        if not Confirm.ask(f"Delete cell {cell.index}?"):
            return
        doc = self.document
        self._set_document(doc[:cell.start] + doc[cell.end:])
        self._set_message("[green]Cell deleted[/green]")

    def save_document(self):
        """Write the document text verbatim."""
        path = self.path
        if path is None:
            path = Path(Prompt.ask("Enter file path", default="cells.py"))
        path.write_text(self.document, encoding="utf-8")
        self.path = path
        self.modified = False
        self._set_message(f"[green]Saved to {path}[/green]")

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def _execute(self, index: int) -> Optional[ExecutionRecord]:
        try:
            future = self.coordinator.execute_cell(index)
        except (KernelBusyError, KernelNotReadyError) as e:
            self._set_message(f"[yellow]{e}[/yellow]")
            return None
        try:
            return _wait(future, self.session, f"[bold]Executing cell {index}...[/bold]",
                         self.settings.poll_interval)
        except CellpadError as e:
            self._set_message(f"[red]Kernel error: {e}[/red] [dim](press 'R' to restart)[/dim]")
            return None

    def execute_current_cell(self):
        """Execute the current cell."""
        cell = self.cells[self.current_cell_index]
        if not cell.body.strip():
            self._set_message("[yellow]Cell is empty[/yellow]")
            return

        record = self._execute(cell.index)
        if record is None:
            return
        if record.interrupted:
            self._set_message(f"[magenta]Cell {cell.index} interrupted[/magenta]")
        elif record.succeeded:
            self._set_message(f"[green]Cell {cell.index} executed[/green]")
        else:
            self._set_message(
                f"[red]Error in cell {cell.index}: {record.error_kind}: {record.error_message}[/red]"
            )

    def execute_all_cells(self):
        """Execute all cells in order, stopping at the first failure."""
        self.coordinator.clear()
        success_count = 0
        for cell in self.cells:
            if not cell.body.strip():
                continue
            self.current_cell_index = cell.index
            record = self._execute(cell.index)
            if record is None or not record.succeeded:
                self._set_message(
                    f"[yellow]Executed {success_count} cells, stopped at cell {cell.index}[/yellow]"
                )
                return
            success_count += 1
        self._set_message(f"[green]All {success_count} cells executed[/green]")

    def clear_outputs(self):
        """Reset every record; the kernel keeps its variables."""
        self.coordinator.clear()
        self._set_message("[green]Cleared outputs[/green]")

    def restart_kernel(self):
        """Restart the kernel with the same interpreter."""
        if not Confirm.ask("Restart the kernel and lose all variables?"):
            return
        self._switch(self.session.interpreter)

    def _switch(self, interpreter: str):
        try:
            future = self.coordinator.switch_kernel(interpreter)
            info = _wait(future, self.session, f"[bold]Starting {interpreter}...[/bold]",
                         self.settings.poll_interval)
        except CellpadError as e:
            self._set_message(f"[red]{e}[/red]")
            return
        self._set_message(f"[green]Kernel ready: Python {info.version}[/green]")

    def choose_kernel(self):
        """Pick an interpreter from the discovered list."""
        specs = discover_interpreters(document_dir=self.path.parent if self.path else None)
        if not specs:
            self._set_message("[yellow]No interpreters found[/yellow]")
            return

        console.print()
        console.print(kernel_table(specs))
        choice = Prompt.ask("Select kernel number (or 'cancel')", default="0")
        if choice == "cancel":
            self._set_message("[yellow]Cancelled[/yellow]")
            return
        try:
            idx = int(choice)
        except ValueError:
            self._set_message("[red]Invalid selection[/red]")
            return
        if not 0 <= idx < len(specs):
            self._set_message("[red]Invalid selection[/red]")
            return
        self._switch(specs[idx].path)

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def complete(self):
        """Complete a line of code typed at the end of the current cell."""
        cell = self.cells[self.current_cell_index]
        console.print()
        line = Prompt.ask("[cyan]Complete[/cyan]")
        if not line:
            return
        body = cell.body
        if body and not body.endswith("\n"):
            body += "\n"
        text = body + line
        candidates = self.completer.complete(text, len(text))
        if not candidates:
            self._set_message(f"[dim]No completions for '{line}'[/dim]")
            return

        table = Table(title="Completions", border_style="cyan")
        table.add_column("#", style="bold cyan", justify="right")
        table.add_column("Name", style="white")
        table.add_column("Kind", style="yellow")
        table.add_column("Detail", style="dim")
        for i, candidate in enumerate(candidates):
            table.add_row(str(i), candidate.text, candidate.category.value, candidate.detail)
        console.print(table)

        choice = Prompt.ask("Insert completion number (or 'cancel')", default="cancel")
        try:
            picked = candidates[int(choice)]
        except (ValueError, IndexError):
            return
        context = classify(text, len(text), self.settings.sql_methods)
        completed = line[:len(line) - len(context.prefix)] + picked.text
        self._replace_body(cell, body + completed + "\n")
        self._set_message(f"[green]Inserted {picked.text}[/green]")

    def show_variables(self):
        """Show the kernel's global names from the latest snapshot."""
        namespace = self.store.namespace
        if not len(namespace):
            console.print("\n[yellow]No variables defined[/yellow]")
            console.input("\n[dim]Press Enter to continue...[/dim]")
            return

        console.print()
        table = Table(title="Namespace Variables", border_style="cyan", show_lines=True)
        table.add_column("Name", style="bold cyan", no_wrap=True)
        table.add_column("Type", style="yellow")
        table.add_column("Kind", style="dim")
        for name in namespace.names():
            symbol = namespace.get(name)
            table.add_row(name, symbol.type, symbol.kind)
        console.print(table)
        console.input("\n[dim]Press Enter to continue...[/dim]")

    def show_tables(self):
        """Show the tables of the latest schema catalog."""
        catalog = self.store.catalog
        if not len(catalog):
            console.print("\n[yellow]No tables known[/yellow]")
            console.input("\n[dim]Press Enter to continue...[/dim]")
            return

        console.print()
        table = Table(title="Tables", border_style="cyan", show_lines=True)
        table.add_column("Table", style="bold cyan", no_wrap=True)
        table.add_column("Engine", style="yellow")
        table.add_column("Columns", max_width=60, overflow="ellipsis")
        for entry in catalog.tables:
            table.add_row(entry.name, entry.engine, ", ".join(entry.columns))
        console.print(table)
        console.input("\n[dim]Press Enter to continue...[/dim]")

    def show_help(self):
        """Show detailed help."""
        console.print()

        help_sections = [
            ("Navigation", [
                ("j / down", "Next cell"),
                ("k / up", "Previous cell"),
                ("g", "First cell"),
                ("G", "Last cell"),
            ]),
            ("Cells", [
                ("Enter", "Edit current cell"),
                ("e", "Execute current cell (Ctrl-C interrupts)"),
                ("E", "Execute all cells"),
                ("a", "Add cell after current"),
                ("b", "Add cell before current"),
                ("d", "Delete current cell"),
                ("x", "Clear all outputs"),
            ]),
            ("Kernel", [
                ("K", "Choose interpreter"),
                ("R", "Restart kernel"),
                ("?", "Show variables"),
                ("T", "Show tables"),
                ("t", "Complete code"),
            ]),
            ("General", [
                ("s", "Save"),
                ("h", "Show this help"),
                ("q", "Quit"),
            ]),
        ]

        for section_name, bindings in help_sections:
            table = Table(
                show_header=False,
                box=None,
                padding=(0, 2),
                title=f"[bold]{section_name}[/bold]",
                title_justify="left",
            )
            table.add_column("Key", style="bold cyan", no_wrap=True, min_width=12)
            table.add_column("Action")
            for key, action in bindings:
                table.add_row(key, action)
            console.print(table)
            console.print()

        console.print(f"[dim]Cells are separated by lines starting with '{self.settings.delimiter}'.[/dim]")
        console.print()
        console.input("[dim]Press Enter to continue...[/dim]")

    def run(self):
        """Run the interactive editor."""
        commands = {
            "h": self.show_help,
            "": self.edit_current_cell,
            "enter": self.edit_current_cell,
            "e": self.execute_current_cell,
            "E": self.execute_all_cells,
            "a": self.add_cell_after,
            "b": self.add_cell_before,
            "d": self.delete_current_cell,
            "x": self.clear_outputs,
            "t": self.complete,
            "?": self.show_variables,
            "T": self.show_tables,
            "K": self.choose_kernel,
            "R": self.restart_kernel,
            "s": self.save_document,
        }

        while self.running:
            self.display_cells()
            self.display_command_bar()

            try:
                key = console.input("\n[bold cyan]> [/bold cyan]").strip()
            except (KeyboardInterrupt, EOFError):
                key = "q"

            if key == "q":
                if self.modified and Confirm.ask("Save before quitting?"):
                    self.save_document()
                self.running = False
            elif key in commands:
                commands[key]()
            elif key in ("j", "down"):
                if self.current_cell_index < len(self.cells) - 1:
                    self.current_cell_index += 1
            elif key in ("k", "up"):
                if self.current_cell_index > 0:
                    self.current_cell_index -= 1
            elif key == "g":
                self.current_cell_index = 0
            elif key == "G":
                self.current_cell_index = len(self.cells) - 1
            else:
                self._set_message(f"[dim]Unknown command: '{key}' (press 'h' for help)[/dim]")

        console.print("\n[green]Goodbye![/green]")


def kernel_table(specs: list[KernelSpec]) -> Table:
    table = Table(title="Available Interpreters", border_style="blue")
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Name", style="white")
    table.add_column("Source", style="yellow")
    table.add_column("Path", style="dim")
    for i, spec in enumerate(specs):
        table.add_row(str(i), spec.name, spec.source, spec.path)
    return table


def run_headless(path: Path, settings: Settings, interpreter: Optional[str] = None) -> int:
    """
    Execute every cell of a file in order, stopping at the first failure.

    Returns:
        Process exit code: 0 if every cell succeeded, 1 otherwise
    """
    document = path.read_text(encoding="utf-8")
    spec = resolve_interpreter(cli=interpreter, document=document, settings=settings,
                               document_dir=path.parent)
    session = _make_session(spec, settings)
    coordinator = ExecutionCoordinator(session, document=document, delimiter=settings.delimiter,
                                       auto_refresh=False)

    console.print(Panel(
        f"[bold]{path.name}[/bold]  [dim]{spec.path} ({spec.source})[/dim]",
        title="[bold blue]cellpad[/bold blue]",
        border_style="blue",
    ))

    try:
        with Status("Starting kernel...", console=console, spinner="dots"):
            session.start().result()
        with Status(f"Executing {len(coordinator.cells)} cells...", console=console, spinner="dots"):
            summary = coordinator.execute_all()
    except CellpadError as e:
        console.print(f"[red]Kernel error: {e}[/red]")
        return 1
    except KeyboardInterrupt:
        session.interrupt()
        console.print("[yellow]Interrupted[/yellow]")
        return 1
    finally:
        session.shutdown()

    cells = coordinator.cells
    for cell, record in zip(cells, summary.records):
        if record.status == RecordStatus.PENDING or not cell.body.strip():
            continue
        title = f"Cell {cell.index}: {cell_title(cell)}"
        console.print(f"[dim]--- {title} ---[/dim]")
        rendered = format_record(record)
        if rendered is not None:
            console.print(rendered)
        console.print()

    total = len(cells)
    if summary.success:
        console.print(f"[green]All {total} cells executed successfully[/green]")
        return 0
    failed = summary.failed_record
    console.print(
        f"[red]Cell {failed.cell_index} failed: {failed.error_kind}[/red] "
        f"[yellow]({summary.executed}/{total} cells executed)[/yellow]"
    )
    return 1


@click.command()
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path), required=False)
@click.option("--execute", "execute_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Run every cell of FILE without the editor")
@click.option("--interpreter", "-i", default=None, help="Python interpreter for the kernel")
@click.option("--delimiter", "-d", default=None, help="Cell delimiter token (default '# %%')")
@click.option("--log-level", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
              help="Logging level")
@click.option("--list-kernels", is_flag=True, help="List discovered interpreters and exit")
@click.version_option(__version__, prog_name="cellpad")
def main(file: Optional[Path], execute_path: Optional[Path], interpreter: Optional[str],
         delimiter: Optional[str], log_level: Optional[str], list_kernels: bool):
    """cellpad: a terminal notebook over plain Python files with '# %%' cells."""
    try:
        settings = load_settings(
            delimiter=delimiter,
            log_level=log_level.upper() if log_level else None,
        )
    except ValidationError as e:
        raise click.UsageError(f"Invalid configuration: {e}")
    configure_logging(settings.log_level)

    if list_kernels:
        specs = discover_interpreters(document_dir=file.parent if file else None)
        if not specs:
            console.print("[yellow]No interpreters found[/yellow]")
            return
        console.print(kernel_table(specs))
        return

    if execute_path is not None:
        if file is not None:
            raise click.UsageError("Give either FILE or --execute FILE, not both")
        sys.exit(run_headless(execute_path, settings, interpreter))

    document = ""
    if file is not None and file.exists():
        document = file.read_text(encoding="utf-8")
    spec = resolve_interpreter(cli=interpreter, document=document, settings=settings,
                               document_dir=file.parent if file else None)
    session = _make_session(spec, settings)
    editor = CellpadEditor(document, file, session, settings)
    try:
        try:
            _wait(session.start(), session, f"[bold]Starting {spec.path}...[/bold]",
                  settings.poll_interval)
        except CellpadError as e:
            editor._set_message(f"[red]{e}[/red] [dim](press 'K' to choose another kernel)[/dim]")
        editor.run()
    finally:
        session.shutdown()


if __name__ == "__main__":
    main()
