#!/usr/bin/env python3
"""
KUBEASSAY POLICY RUNTIME
------------------------
The narrow interface the harness uses to parse, compile and evaluate Rego
modules. The engine never looks inside a module beyond its package path and
the names of its rules.

Author: KubeAssay Team
"""

import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional


class PolicyError(Exception):
    """Base class for Rego failures."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []


class PolicyParseError(PolicyError):
    """The module text is not syntactically valid Rego."""


class PolicyCompileError(PolicyError):
    """The module parsed but failed compilation (unsafe vars, type errors...)."""


class PolicyEvalError(PolicyError):
    """Evaluation of a query failed."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None, code: str = ""):
        super().__init__(message, errors)
        self.code = code


@dataclass
class PolicyModule:
    """A parsed Rego module."""
    source: str
    package: str               # e.g. "check.x1y2z3", without the "data." prefix
    rules: List[str] = field(default_factory=list)  # rule head names, in source order
    filename: str = "check.rego"


@dataclass
class ExpressionValue:
    """One expression from an evaluation result set."""
    text: str
    value: Any


class PolicyRuntime(ABC):
    """Parses, compiles and evaluates Rego modules."""

    @abstractmethod
    def parse(self, source: str, filename: str = "check.rego") -> PolicyModule:
        """
        Parses a complete module. A module with nothing but a package
        declaration and comments parses to a module with no rules. Raises
        PolicyParseError on syntax errors.
        """

    @abstractmethod
    def compile(self, module: PolicyModule) -> None:
        """Raises PolicyCompileError if the module does not compile."""

    @abstractmethod
    def evaluate(self, module: PolicyModule, query: str, data: Any,
                 input: Any = None) -> List[ExpressionValue]:
        """
        Evaluates `query` with `module` loaded and `data` as the base data
        document. Undefined queries return an empty list.
        """


def random_name(length: int = 12) -> str:
    # Rego package segments must start with a letter.
    alphabet = string.ascii_lowercase + string.digits
    return secrets.choice(string.ascii_lowercase) + "".join(
        secrets.choice(alphabet) for _ in range(length - 1))


def parse_check_fragment(runtime: PolicyRuntime, text: str) -> PolicyModule:
    """
    Parses an anonymous check fragment. Fragments carry no package
    declaration, so a unique one is generated to keep every fragment's rules
    in their own namespace.
    """
    name = random_name()
    source = f"package check.{name}\n{text}"
    return runtime.parse(source, filename=f"internal/check/{name}.rego")
