#!/usr/bin/env python3
"""
KUBEASSAY RECORDER
------------------
Tracks the progress of test runs as a hierarchy: each test document is
made of steps, and results are recorded against the innermost open scope.

The Recorder interface is shared by the StateRecorder, which keeps the
hierarchy and answers "should we keep going?", and by the output
renderers, which draw it as it happens. `stack_recorders` combines them.

Author: KubeAssay Team
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from kubeassay.core.errors import RecorderStateError
from kubeassay.core.models import Result, Severity

logger = logging.getLogger("kubeassay.recorder")


class Recorder(ABC):
    """Records test execution as documents, steps and results."""

    @abstractmethod
    def should_continue(self) -> bool:
        """False once a fatal or skipping result has been recorded."""

    @abstractmethod
    def failed(self) -> bool:
        """True if any error has been recorded."""

    @abstractmethod
    def document(self, desc: str):
        """Context manager scoping a test document."""

    @abstractmethod
    def step(self, desc: str):
        """Context manager scoping a step within the current document."""

    @abstractmethod
    def update(self, *results: Result):
        """Records results against the current scope."""


@dataclass
class RecordedScope:
    description: str
    start: float = field(default_factory=time.time)
    end: Optional[float] = None
    results: List[Result] = field(default_factory=list)

    def terminal(self) -> bool:
        return any(r.is_terminal() for r in self.results)

    def failed(self) -> bool:
        return any(r.is_failed() for r in self.results)


@dataclass
class RecordedStep(RecordedScope):
    pass


@dataclass
class RecordedDocument(RecordedScope):
    steps: List[RecordedStep] = field(default_factory=list)

    def all_results(self) -> Iterator[Result]:
        yield from self.results
        for step in self.steps:
            yield from step.results

    def terminal(self) -> bool:
        return any(r.is_terminal() for r in self.all_results())

    def failed(self) -> bool:
        return any(r.is_failed() for r in self.all_results())


class StateRecorder(Recorder):
    """
    Keeps the full record of every document and step. Opening or closing
    scopes out of order, or recording a non-message result outside a step,
    raises RecorderStateError.
    """

    def __init__(self):
        self.documents: List[RecordedDocument] = []
        self.current_document: Optional[RecordedDocument] = None
        self.current_step: Optional[RecordedStep] = None

    def should_continue(self) -> bool:
        # Inside a document, this asks whether to keep going with that
        # document. Otherwise it asks whether to keep going at all.
        which = self.documents
        if self.current_document is not None:
            which = [self.current_document]
        return not any(d.terminal() for d in which)

    def failed(self) -> bool:
        return any(d.failed() for d in self.documents)

    @contextmanager
    def document(self, desc: str):
        if self.current_step is not None:
            raise RecorderStateError("can't start a new document with an open step")
        if self.current_document is not None:
            raise RecorderStateError("overlapping documents")

        doc = RecordedDocument(description=desc)
        self.documents.append(doc)
        self.current_document = doc
        logger.info("document start: %s", desc)
        try:
            yield doc
        finally:
            if self.current_document is not doc:
                raise RecorderStateError("overlapping documents")
            if self.current_step is not None:
                raise RecorderStateError("closing document with an open step")
            doc.end = time.time()
            self.current_document = None
            logger.info("document end: %s", desc)

    @contextmanager
    def step(self, desc: str):
        if self.current_document is None:
            raise RecorderStateError("no open document")
        if self.current_step is not None:
            raise RecorderStateError("overlapping steps")

        step = RecordedStep(description=desc)
        self.current_document.steps.append(step)
        self.current_step = step
        logger.info("step start: %s", desc)
        try:
            yield step
        finally:
            if self.current_step is not step:
                raise RecorderStateError("overlapping steps")
            step.end = time.time()
            self.current_step = None
            logger.info("step end: %s", desc)

    def update(self, *results: Result):
        if self.current_document is None:
            raise RecorderStateError("no open document")
        if self.current_step is None and any(r.severity is not Severity.NONE for r in results):
            # Only plain messages may be attached to the document itself.
            raise RecorderStateError("no open step")

        scope = self.current_step or self.current_document

        for r in results:
            logger.debug("%s: %s", r.severity, r.message)
            scope.results.append(r)


class StackedRecorder(Recorder):
    """Sends every call to `top`, then to `next`."""

    def __init__(self, top: Recorder, next: Recorder):
        self.top = top
        self.next = next

    def should_continue(self) -> bool:
        return self.top.should_continue() and self.next.should_continue()

    def failed(self) -> bool:
        return self.top.failed() or self.next.failed()

    @contextmanager
    def document(self, desc: str):
        with ExitStack() as stack:
            stack.enter_context(self.top.document(desc))
            stack.enter_context(self.next.document(desc))
            yield

    @contextmanager
    def step(self, desc: str):
        with ExitStack() as stack:
            stack.enter_context(self.top.step(desc))
            stack.enter_context(self.next.step(desc))
            yield

    def update(self, *results: Result):
        self.top.update(*results)
        self.next.update(*results)


def stack_recorders(top: Recorder, next: Recorder) -> Recorder:
    return StackedRecorder(top, next)
