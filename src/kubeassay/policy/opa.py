#!/usr/bin/env python3
"""
KUBEASSAY OPA RUNTIME
---------------------
Drives the Open Policy Agent command line tool to parse, compile and
evaluate Rego. Every call works in a private temporary directory holding the
module and a JSON snapshot of the data document.

Author: KubeAssay Team
"""

import json
import logging
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Sequence

from kubeassay.core.config import REGO_V0, REGO_V1, REGO_VERSIONS
from kubeassay.policy.runtime import (
    ExpressionValue,
    PolicyCompileError,
    PolicyError,
    PolicyEvalError,
    PolicyModule,
    PolicyParseError,
    PolicyRuntime,
)

logger = logging.getLogger("kubeassay.policy")
trace_logger = logging.getLogger("kubeassay.policy.trace")

OPA_VERSION = re.compile(r"^Version:\s*v?(\d+)\.", re.MULTILINE)


class OpaRuntime(PolicyRuntime):
    """PolicyRuntime backed by the `opa` binary."""

    def __init__(self, binary: str = "opa", rego_version: str = REGO_V0,
                 trace: bool = False, timeout: float = 60.0):
        if rego_version not in REGO_VERSIONS:
            raise ValueError(f"unknown Rego version '{rego_version}'")
        self.binary = binary
        self.rego_version = rego_version
        self.trace = trace
        self.timeout = timeout
        self._major: Optional[int] = None

    def _run(self, args: Sequence[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = [self.binary] + list(args)
        logger.debug("running %s", " ".join(cmd))
        try:
            return subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise PolicyError(f"OPA binary '{self.binary}' not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise PolicyError(f"'{' '.join(cmd)}' timed out after {self.timeout}s") from e

    def major_version(self) -> int:
        """The major version of the OPA binary, asked for once."""
        if self._major is None:
            proc = self._run(["version"])
            match = OPA_VERSION.search(proc.stdout or "")
            if proc.returncode != 0 or match is None:
                logger.warning("could not read the OPA version, assuming 1.x")
                self._major = 1
            else:
                self._major = int(match.group(1))
            logger.debug("OPA major version is %d", self._major)
        return self._major

    def _compat(self) -> List[str]:
        # OPA 1.x reads Rego v1 by default; older releases read v0.
        if self.major_version() >= 1:
            return ["--v0-compatible"] if self.rego_version == REGO_V0 else []
        return ["--v1-compatible"] if self.rego_version == REGO_V1 else []

    def parse(self, source: str, filename: str = "check.rego") -> PolicyModule:
        with tempfile.TemporaryDirectory(prefix="kubeassay-") as tmp:
            path = _write_module(Path(tmp), filename, source)
            proc = self._run(["parse", "--format", "json"] + self._compat() + [str(path)])

        if proc.returncode != 0:
            message, errors = _extract_errors(proc)
            raise PolicyParseError(message, errors)

        try:
            ast = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise PolicyError(f"unreadable 'opa parse' output: {e}") from e

        return PolicyModule(
            source=source,
            package=_package_from_ast(ast),
            rules=_rule_names_from_ast(ast),
            filename=filename,
        )

    def compile(self, module: PolicyModule) -> None:
        with tempfile.TemporaryDirectory(prefix="kubeassay-") as tmp:
            path = _write_module(Path(tmp), module.filename, module.source)
            proc = self._run(["check", "--format", "json"] + self._compat() + [str(path)])

        if proc.returncode != 0:
            message, errors = _extract_errors(proc)
            raise PolicyCompileError(message, errors)

    def evaluate(self, module: PolicyModule, query: str, data: Any,
                 input: Any = None) -> List[ExpressionValue]:
        with tempfile.TemporaryDirectory(prefix="kubeassay-") as tmp:
            root = Path(tmp)
            module_path = _write_module(root, module.filename, module.source)
            data_path = root / "data.json"
            data_path.write_text(json.dumps(data, default=str), encoding="utf-8")

            args = ["eval", "--format", "json", "--strict-builtin-errors"] + self._compat()
            args += ["--data", str(module_path), "--data", str(data_path)]
            stdin = None
            if input is not None:
                args.append("--stdin-input")
                stdin = json.dumps(input, default=str)
            if self.trace:
                args += ["--explain", "full"]
            args.append(query)

            proc = self._run(args, stdin=stdin)

        if proc.returncode != 0:
            message, errors = _extract_errors(proc)
            code = errors[0].get("code", "") if errors else ""
            raise PolicyEvalError(message, errors, code=code)

        try:
            output = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as e:
            raise PolicyEvalError(f"unreadable 'opa eval' output: {e}") from e

        for event in output.get("explanation", []):
            trace_logger.info("%s", json.dumps(event, sort_keys=True))

        values = []
        for result in output.get("result", []):
            for expr in result.get("expressions", []):
                values.append(ExpressionValue(text=expr.get("text", query), value=expr.get("value")))
        return values


def _write_module(root: Path, filename: str, source: str) -> Path:
    path = root / "modules" / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source, encoding="utf-8")
    return path


def _extract_errors(proc: subprocess.CompletedProcess):
    """Pulls structured errors out of a failed OPA invocation."""
    for stream in (proc.stdout, proc.stderr):
        if not stream or not stream.strip().startswith("{"):
            continue
        try:
            doc = json.loads(stream)
        except json.JSONDecodeError:
            continue
        errors = doc.get("errors") or []
        if errors:
            return "; ".join(_format_error(e) for e in errors), errors

    text = (proc.stderr or proc.stdout or "").strip()
    return text or f"opa exited with status {proc.returncode}", []


def _format_error(error: dict) -> str:
    message = error.get("message", "unknown error")
    code = error.get("code")
    location = error.get("location") or {}
    row = location.get("row")
    if row:
        # Row 1 is the generated package line, so rows map directly onto
        # lines of the fragment once that line is discounted.
        message = f"line {max(row - 1, 1)}: {message}"
    return f"{code}: {message}" if code else message


def _package_from_ast(ast: dict) -> str:
    terms = (ast.get("package") or {}).get("path") or []
    parts = [str(t.get("value")) for t in terms]
    if parts and parts[0] == "data":
        parts = parts[1:]
    return ".".join(parts)


def _rule_names_from_ast(ast: dict) -> List[str]:
    names = []
    for rule in ast.get("rules") or []:
        head = rule.get("head") or {}
        name = head.get("name")
        if not name:
            ref = head.get("ref") or []
            name = ref[0].get("value") if ref else None
        if name:
            names.append(str(name))
    return names
