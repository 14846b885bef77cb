"""
Console output helpers for the API drift monitor.
"""

import json
import os
from typing import Any, Dict, List

import yaml
from rich.console import Console
from rich.table import Table

from apidrift.logger import get_logger
from apidrift.models import ApiEndpoint, OpenApiSpec
from apidrift.reconcile import AlertDescriptor
from apidrift.resolver import ResolutionResult

# Get logger
logger = get_logger("utils")

# Rich console for pretty output
console = Console()


def print_specs(specs: List[OpenApiSpec]) -> None:
    table = Table(title="Spec Files")
    table.add_column("Name", style="cyan")
    table.add_column("Format", style="magenta")
    table.add_column("Hosts", style="blue")
    table.add_column("Auto Generated", style="yellow")
    table.add_column("Updated", style="green")

    for spec in specs:
        table.add_row(
            spec.name,
            spec.extension,
            ", ".join(spec.hosts or []),
            "yes" if spec.is_auto_generated else "no",
            spec.updated_at.strftime("%Y-%m-%d %H:%M:%S") if spec.updated_at else ""
        )
    console.print(table)


def print_resolutions(results: List[ResolutionResult], title: str = "Endpoint Changes") -> None:
    table = Table(title=title)
    table.add_column("Method", style="cyan")
    table.add_column("Host", style="blue")
    table.add_column("Path", style="green")
    table.add_column("Outcome", style="yellow")
    table.add_column("Supersedes", style="magenta")

    for result in results:
        if result.conflict is not None:
            outcome = "conflict"
        elif result.superseded_by is not None:
            outcome = f"merged into {result.superseded_by.path}"
        elif result.created is not None:
            outcome = "created"
        else:
            outcome = "updated"
        table.add_row(
            result.method,
            result.host,
            result.path,
            outcome,
            ", ".join(e.path for e in result.supersedes)
        )
    console.print(table)


def print_suggestions(endpoint: ApiEndpoint, suggestions: List[Dict[str, Any]]) -> None:
    if not suggestions:
        console.print(f"[yellow]No traffic recorded for {endpoint.method} {endpoint.path}[/yellow]")
        return

    table = Table(title=f"Suggested Paths for {endpoint.method} {endpoint.host}{endpoint.path}")
    table.add_column("Template", style="green")
    table.add_column("Confidence", style="cyan", justify="right")
    for suggestion in suggestions:
        table.add_row(suggestion["template"], f"{suggestion['confidence']:.3f}")
    console.print(table)


def print_descriptors(descriptors: List[AlertDescriptor]) -> None:
    if not descriptors:
        console.print("[green]Trace matches its spec.[/green]")
        return

    table = Table(title="Spec Diffs")
    table.add_column("Type", style="cyan")
    table.add_column("Field", style="yellow")
    table.add_column("Kind", style="red")
    table.add_column("Description", style="green")
    for descriptor in descriptors:
        table.add_row(
            descriptor.alert_type.value,
            descriptor.field_path,
            descriptor.kind.value,
            descriptor.description
        )
    console.print(table)


def print_error(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")


def load_json_file(file_path: str) -> Any:
    """Load a JSON (or YAML) file, chosen by extension."""
    if not os.path.exists(file_path):
        logger.error(f"File not found: {file_path}")
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, "r") as f:
        if os.path.splitext(file_path)[1].lower() in (".yaml", ".yml"):
            return yaml.safe_load(f)
        return json.load(f)
