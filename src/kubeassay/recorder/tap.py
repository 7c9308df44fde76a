#!/usr/bin/env python3
"""
KUBEASSAY TAP WRITER
--------------------
Writes test progress in the Test Anything Protocol, version 13
(https://testanything.org/tap-version-13-specification.html).

Each document is a TAP stream and each step a test point. Failed steps
carry a YAML diagnostics block listing their errors.

Author: KubeAssay Team
"""

import io
import sys
from contextlib import contextmanager
from typing import List, Optional, TextIO

from ruamel.yaml import YAML

from kubeassay.core.models import Result, Severity
from kubeassay.recorder.recorder import Recorder

DIAGNOSTIC_INDENT = "  "


def _dump_yaml(data) -> str:
    yaml = YAML(typ="safe", pure=True)
    yaml.default_flow_style = False
    buf = io.StringIO()
    yaml.dump(data, buf)
    return buf.getvalue().rstrip("\n")


class TapWriter(Recorder):
    """Renders documents and steps as TAP. Never stops or fails a run."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self.doc_count = 0
        self.step_count = 0
        self.step_errors: List[dict] = []

    def _write(self, prefix: str, text: str):
        for line in text.split("\n"):
            self.stream.write(f"{prefix}{line}\n")

    def should_continue(self) -> bool:
        return True

    def failed(self) -> bool:
        return False

    @contextmanager
    def document(self, desc: str):
        # TAP has no notion of suites, so successive documents are just
        # separate streams with a blank line between them.
        if self.doc_count > 0:
            self.stream.write("\n")
        self.stream.write("TAP version 13\n")
        self._write("# ", desc)

        self.doc_count += 1
        self.step_count = 0
        try:
            yield
        finally:
            self.stream.write(f"1..{self.step_count}\n")
            self.stream.flush()

    @contextmanager
    def step(self, desc: str):
        self.step_count += 1
        n = self.step_count
        self.step_errors = []
        try:
            yield
        finally:
            errors, self.step_errors = self.step_errors, []
            failed = any(e["severity"] in (str(Severity.ERROR), str(Severity.FATAL)) for e in errors)
            skipped = any(e["severity"] == str(Severity.SKIP) for e in errors)

            if failed:
                self.stream.write(f"not ok {n} - {desc}\n")
            elif skipped:
                self.stream.write(f"ok {n} - {desc} # SKIP\n")
            else:
                self.stream.write(f"ok {n} - {desc}\n")

            if errors:
                self._write(DIAGNOSTIC_INDENT, "---")
                self._write(DIAGNOSTIC_INDENT, _dump_yaml(errors))
                self._write(DIAGNOSTIC_INDENT, "...")

    def update(self, *results: Result):
        for r in results:
            if r.severity is Severity.NONE:
                self._write("# ", r.message)
                continue

            self._write(f"# {r.severity} - ", r.message)
            if r.severity is not Severity.WARN:
                self.step_errors.append({"severity": str(r.severity), "message": r.message})
