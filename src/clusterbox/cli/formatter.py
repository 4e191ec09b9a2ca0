import json
import typer
from typing import Any, List, Sequence
from pydantic import BaseModel
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from clusterbox.runtime.contracts import DisplayItem

# Create a stderr console for logging
error_console = Console(stderr=True)


class OutputFormatter:
    """
    Handles output formatting for the CLI.
    Ensures separation of concerns between System Logs (stderr) and Data (stdout).
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[CLUSTERBOX]"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{prefix} {escape(message)}[/{style}]", highlight=False, soft_wrap=True)

    @staticmethod
    def print_table(title: str, columns: Sequence[str], rows: List[Sequence[Any]]) -> None:
        """Print a data table to stdout."""
        table = Table(title=title, header_style="bold")
        for column in columns:
            table.add_column(column, overflow="fold")
        for row in rows:
            table.add_row(*[str(value) for value in row])

        Console(highlight=False).print(table)

    @staticmethod
    def print_services(items: List[DisplayItem], tag: str) -> None:
        """Print the service table of one instance."""
        if not items:
            OutputFormatter.log(f"clusterbox instance {tag!r} has no service processes.", severity="warning")
            return

        OutputFormatter.print_table(
            f"clusterbox instance {tag}",
            ["NAME", "SERVICE", "PID", "STATUS", "VERSION"],
            [[item.name, item.service, item.pid or "-", item.status, item.version or "-"] for item in items],
        )

    @staticmethod
    def print_message(message: str) -> None:
        """Print a command reply message to stdout exactly as received."""
        if message:
            typer.echo(message, nl=not message.endswith("\n"))

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout.
        Handles Pydantic models and complex types.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode='json')
            if hasattr(obj, "isoformat"):
                return obj.isoformat()
            return str(obj)

        try:
            output = json.dumps(data, indent=2, default=json_serializer)
            typer.echo(output)
        except TypeError as e:
            OutputFormatter.log(f"JSON Serialization failed: {e}", severity="error")
            typer.echo(str(data))
