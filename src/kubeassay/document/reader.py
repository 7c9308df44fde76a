#!/usr/bin/env python3
"""
KUBEASSAY DOCUMENT READER
-------------------------
Splits a test document into Fragments on YAML document separators
(https://yaml.org/spec/1.0/#id2561718). The content of each fragment is
opaque at this point and need not be YAML.

Author: KubeAssay Team
"""

import io
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, TextIO, Union

from kubeassay.core.models import Location
from kubeassay.document.fragment import Fragment

SEPARATOR = re.compile(r"^---[\t\f\r ]*$")


@dataclass
class Document:
    """A named, ordered collection of related Fragments."""
    name: str = ""
    parts: List[Fragment] = field(default_factory=list)


def read_document(stream: TextIO, name: str = "") -> Document:
    """
    Reads fragments from a text stream. Separator lines are not part of any
    fragment, and fragments with no content are dropped, which keeps the
    recorded line ranges accurate.
    """
    doc = Document(name=name)
    buf = io.StringIO()
    start_line = 0
    current_line = 0

    def flush(end_line: int):
        content = buf.getvalue()
        if content:
            doc.parts.append(Fragment(content, Location(start_line, end_line)))

    for raw in stream:
        current_line += 1
        line = raw[:-1] if raw.endswith("\n") else raw
        if start_line == 0:
            start_line = current_line

        # We just read another line, so terminate the previous one.
        if buf.tell() > 0:
            buf.write("\n")

        if SEPARATOR.match(line):
            flush(current_line - 1)
            buf = io.StringIO()
            start_line = 0
            continue

        buf.write(line)

    flush(current_line)
    return doc


def read_file(path: Union[str, Path]) -> Document:
    """Reads the Document at `path`. Raises OSError if it cannot be read."""
    with open(path, "r", encoding="utf-8-sig") as fh:
        return read_document(fh, name=str(path))
