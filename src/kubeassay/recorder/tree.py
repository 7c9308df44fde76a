# src/kubeassay/recorder/tree.py
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape

from kubeassay.core.models import Result, Severity
from kubeassay.recorder.recorder import Recorder

# Fixed-width boxing characters.
BOX_BRANCH = "├─"
BOX_VERTICAL = "│ "
BOX_LEFT = "└─"

BRANCH_LEADER = BOX_BRANCH + " "
ELBOW_LEADER = BOX_LEFT + " "
EMPTY_LEADER = ""

SEVERITY_STYLES = {
    Severity.WARN: "yellow",
    Severity.ERROR: "bold red",
    Severity.FATAL: "bold magenta",
    Severity.SKIP: "dim",
}


def format_fail_count(counts: Counter) -> str:
    n = counts[Severity.ERROR] + counts[Severity.FATAL]
    return f"{n} {'error' if n == 1 else 'errors'}"


def count_errors(counts: Counter) -> int:
    return counts[Severity.ERROR] + counts[Severity.FATAL]


class TreeWriter(Recorder):
    """
    TreeWriter: draws test progress as a timestamped tree.
    Only renders; it never stops a run and never fails one.
    """

    def __init__(self, console: Optional[Console] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.console = console or Console(highlight=False)
        self.clock = clock
        self.indent = 0
        self.doc_count = 0
        self.step_count = 0
        self.in_step = False
        self.step_errors = Counter()
        self.doc_errors = Counter()

    def _print(self, leader: str, text: str, style: str = "", label: str = ""):
        """
        Prints a possibly multi-line message. The leader is only drawn on
        the first line; continuation lines hang one level deeper.
        """
        timestamp = self.clock().strftime("%H:%M:%S.%f")[:-2]

        for n, line in enumerate(text.split("\n")):
            if n == 0:
                prefix = BOX_VERTICAL * self.indent + leader
                if label:
                    line = f"{label}: {line}"
            else:
                prefix = BOX_VERTICAL * (self.indent + 1) + " "

            body = escape(line)
            if style:
                body = f"[{style}]{body}[/{style}]"
            self.console.print(f"[dim]{timestamp}[/dim]  {prefix}{body}", soft_wrap=True, emoji=False)

    def should_continue(self) -> bool:
        return True

    def failed(self) -> bool:
        return False

    @contextmanager
    def document(self, desc: str):
        if self.doc_count > 0:
            self.console.print()
        self._print(EMPTY_LEADER, f"Running: {desc}", style="bold")

        self.doc_count += 1
        self.step_count = 0
        self.doc_errors = Counter()
        try:
            yield
        finally:
            if count_errors(self.doc_errors) > 0:
                self._print(ELBOW_LEADER, f"Failed with {format_fail_count(self.doc_errors)}", style="bold red")
            elif self.doc_errors[Severity.SKIP] > 0:
                self._print(ELBOW_LEADER, f"Skipped after {self.step_count} steps", style="dim")
            else:
                self._print(ELBOW_LEADER, f"Pass with {self.step_count} steps OK", style="green")

    @contextmanager
    def step(self, desc: str):
        self.step_count += 1
        self._print(BRANCH_LEADER, f"Step {self.step_count}: {desc}")

        self.indent += 1
        self.in_step = True
        self.step_errors = Counter()
        try:
            yield
        finally:
            if count_errors(self.step_errors) > 0:
                self._print(ELBOW_LEADER, f"Failed with {format_fail_count(self.step_errors)}", style="red")
            elif self.step_errors[Severity.SKIP] > 0:
                self._print(ELBOW_LEADER, "Skipped", style="dim")
            else:
                self._print(ELBOW_LEADER, "Pass", style="green")

            self.indent -= 1
            self.in_step = False
            self.doc_errors.update(self.step_errors)
            self.step_errors = Counter()

    def update(self, *results: Result):
        counts = self.step_errors if self.in_step else self.doc_errors
        for r in results:
            if r.severity is Severity.NONE:
                self._print(BRANCH_LEADER, r.message)
                continue

            counts[r.severity] += 1
            self._print(BRANCH_LEADER, r.message,
                        style=SEVERITY_STYLES[r.severity],
                        label=str(r.severity).upper())
