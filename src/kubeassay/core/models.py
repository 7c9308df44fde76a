#!/usr/bin/env python3
"""
KUBEASSAY CORE MODELS
---------------------
Defines the fundamental data structures shared across the KubeAssay engine.
These models are the contract between the document reader, the object
driver, the check evaluator and the recorders.

Author: KubeAssay Team
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """How serious a recorded result is."""
    NONE = "None"
    WARN = "Warn"
    ERROR = "Error"
    FATAL = "Fatal"
    SKIP = "Skip"

    def __str__(self) -> str:
        return self.value


@dataclass
class Result:
    """
    A single timestamped outcome recorded against a test step.

    Results with no severity are plain informational messages.
    """
    severity: Severity
    message: str
    timestamp: float = field(default_factory=time.time)

    def is_terminal(self) -> bool:
        """True if this result should end the current test document."""
        return self.severity in (Severity.FATAL, Severity.SKIP)

    def is_failed(self) -> bool:
        """True if this result counts as a test failure."""
        return self.severity in (Severity.FATAL, Severity.ERROR)

    @classmethod
    def info(cls, message: str) -> "Result":
        return cls(Severity.NONE, message)

    @classmethod
    def warn(cls, message: str) -> "Result":
        return cls(Severity.WARN, message)

    @classmethod
    def error(cls, message: str) -> "Result":
        return cls(Severity.ERROR, message)

    @classmethod
    def fatal(cls, message: str) -> "Result":
        return cls(Severity.FATAL, message)

    @classmethod
    def skip(cls, message: str) -> "Result":
        return cls(Severity.SKIP, message)


@dataclass
class CheckResult:
    """A single message produced by a matching policy rule."""
    severity: Severity
    message: str

    def as_result(self) -> Result:
        return Result(self.severity, self.message)


@dataclass(frozen=True)
class Location:
    """Inclusive, 1-indexed line range of a fragment within its document."""
    start: int
    end: int

    def __str__(self) -> str:
        if self.start == self.end:
            return f"line {self.start}"
        return f"lines {self.start}-{self.end}"


class ObjectOperation(str, Enum):
    """What the runner should do with a hydrated object."""
    UPDATE = "update"
    DELETE = "delete"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ObjectReference:
    """Identifies the Kubernetes API object an operation was aimed at."""
    name: str = ""
    namespace: str = ""
    group: str = ""
    version: str = ""
    kind: str = ""

    def as_dict(self) -> Dict[str, Any]:
        # The group/version/kind triple is nested under "meta" so that
        # the lower-cased names are what checks see in the input document.
        return {
            "name": self.name,
            "namespace": self.namespace,
            "meta": {
                "group": self.group,
                "version": self.version,
                "kind": self.kind,
            },
        }

    def __str__(self) -> str:
        kind = f"{self.kind.lower()}.{self.group}" if self.group else self.kind.lower()
        if self.namespace:
            return f"{kind}/{self.namespace}/{self.name}"
        return f"{kind}/{self.name}"


@dataclass
class OperationResult:
    """
    The outcome of applying or deleting an object.

    API rejections are not exceptions: they are captured in `error` as a
    Kubernetes Status document so that checks can decide whether the
    rejection was expected.
    """
    target: ObjectReference
    error: Optional[Dict[str, Any]] = None
    latest: Optional[Any] = None  # Unstructured snapshot returned by the API

    def succeeded(self) -> bool:
        return self.error is None

    def as_input(self) -> Dict[str, Any]:
        """Renders the result as the input document for a policy check."""
        return {
            "error": self.error,
            "latest": self.latest.content if self.latest is not None else None,
            "target": self.target.as_dict(),
        }
