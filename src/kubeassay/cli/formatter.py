# src/kubeassay/cli/formatter.py
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kubeassay.core.unstructured import Unstructured

# Initialize the Rich console for high-quality terminal output
console = Console()
err_console = Console(stderr=True)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parses an RFC 3339 timestamp as written by the API server."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def human_duration(seconds: float) -> str:
    """
    Formats an age the way kubectl does: more precision for young objects,
    less as they get older.
    """
    if seconds < -1:
        return "<invalid>"
    if seconds < 0:
        return "0s"

    seconds = int(seconds)
    if seconds < 120:
        return f"{seconds}s"

    minutes = seconds // 60
    if minutes < 10:
        s = seconds % 60
        return f"{minutes}m{s}s" if s else f"{minutes}m"
    if minutes < 180:
        return f"{minutes}m"

    hours = minutes // 60
    if hours < 8:
        m = minutes % 60
        return f"{hours}h{m}m" if m else f"{hours}h"
    if hours < 48:
        return f"{hours}h"
    if hours < 24 * 8:
        h = hours % 24
        return f"{hours // 24}d{h}h" if h else f"{hours // 24}d"
    if hours < 24 * 365 * 2:
        return f"{hours // 24}d"
    if hours < 24 * 365 * 8:
        d = (hours // 24) % 365
        return f"{hours // 24 // 365}y{d}d" if d else f"{hours // 24 // 365}y"
    return f"{hours // 24 // 365}y"


class KubeFormatter:
    """
    KubeFormatter: renders harness state that lives outside a test run,
    such as the objects left behind in the cluster.
    """

    def __init__(self, out: Optional[Console] = None):
        self.console = out or console

    def object_rows(self, objects: List[Unstructured],
                    now: Optional[datetime] = None) -> List[Dict[str, str]]:
        now = now or datetime.now(timezone.utc)
        rows = []
        for obj in objects:
            ref = obj.reference()
            created = parse_timestamp(obj.creation_timestamp)
            age = human_duration((now - created).total_seconds()) if created else "<unknown>"
            rows.append({
                "namespace": obj.namespace,
                "name": str(replace(ref, namespace="")),
                "run_id": obj.run_id,
                "age": age,
            })
        return rows

    def print_objects(self, objects: List[Unstructured], now: Optional[datetime] = None):
        """Builds the table of objects managed by test runs."""
        if not objects:
            return

        table = Table(show_header=True, header_style="bold magenta", box=None)
        table.add_column("NAMESPACE")
        table.add_column("NAME")
        table.add_column("RUN ID", style="dim")
        table.add_column("AGE", justify="right")

        for row in self.object_rows(objects, now):
            table.add_row(row["namespace"], row["name"], row["run_id"], row["age"])

        self.console.print(table)

    def print_header(self, version: str, subtitle: str):
        """Renders the splash header on stderr so that test output stays clean."""
        err_console.print(Panel.fit(
            f"[bold cyan]KubeAssay {version}[/bold cyan]\n"
            f"[dim]{subtitle}[/dim]",
            border_style="cyan",
        ))
