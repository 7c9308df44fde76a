#!/usr/bin/env python3
"""
KUBEASSAY CHECK DRIVER
----------------------
Binds Rego check modules to the shared data store, evaluates every
assertion rule and converts rule results into severity-tagged messages.

Since cluster state converges asynchronously, `run_check` polls a check
until it comes back clean or the timeout expires.

Author: KubeAssay Team
"""

import logging
import time
from typing import Any, Callable, List, Optional

from kubeassay.core.models import CheckResult, Severity
from kubeassay.policy.rules import assertion_rules, severity_for_rule
from kubeassay.policy.runtime import ExpressionValue, PolicyEvalError, PolicyModule, PolicyRuntime
from kubeassay.policy.store import DataStore, StoreNotFoundError, format_path, parse_path

logger = logging.getLogger("kubeassay.policy")

BUILTIN_ERROR_CODE = "eval_builtin_error"


class CheckDriver:
    """Evaluates Rego checks against a transactional data document."""

    def __init__(self, runtime: PolicyRuntime, store: Optional[DataStore] = None):
        self.runtime = runtime
        self.store = store if store is not None else DataStore()

    # --- Data document ---

    def store_item(self, where: str, what: Any):
        """
        Stores `what` at `where`, replacing any existing value. Missing
        intermediate path elements are created.
        """
        parts = parse_path(where)
        try:
            self._write_item(parts, what)
        except StoreNotFoundError:
            self.store_path(where)
            self._write_item(parts, what)

    def _write_item(self, parts: List[str], what: Any):
        with self.store.transaction(write=True) as txn:
            try:
                txn.replace(parts, what)
            except StoreNotFoundError:
                txn.add(parts, what)

    def store_path(self, where: str):
        """Creates every element of the path that is not already present."""
        parts = parse_path(where)
        with self.store.transaction(write=True) as txn:
            for i in range(1, len(parts) + 1):
                current = parts[:i]
                try:
                    txn.read(current)
                except StoreNotFoundError:
                    txn.add(current, {})

    def append_item(self, where: str, what: Any):
        """Appends `what` to the list at `where`, creating the list if needed."""
        parts = parse_path(where)
        self.store_path(format_path(parts[:-1]))
        with self.store.transaction(write=True) as txn:
            try:
                items = txn.read(parts)
            except StoreNotFoundError:
                txn.add(parts, [what])
                return
            if not isinstance(items, list):
                items = [items]
            txn.replace(parts, items + [what])

    def remove_path(self, where: str):
        """Removes the value at the path. Raises StoreNotFoundError if absent."""
        with self.store.transaction(write=True) as txn:
            txn.remove(parse_path(where))

    # --- Evaluation ---

    def eval(self, module: PolicyModule, input: Any = None) -> List[CheckResult]:
        """
        Queries every assertion rule in the module. Raises PolicyEvalError
        if evaluation fails for reasons other than a builtin error.
        """
        results = []
        data = self.store.snapshot()

        for name in assertion_rules(module.rules):
            query = f"data.{module.package}.{name}"
            severity = severity_for_rule(name)

            try:
                values = self.runtime.evaluate(module, query, data, input)
            except PolicyEvalError as e:
                # Builtins that fail usually reach outside the harness (e.g.
                # HTTP requests), so the failure belongs to the test.
                if e.code != BUILTIN_ERROR_CODE:
                    raise
                results.append(CheckResult(Severity.ERROR, str(e)))
                continue

            for value in values:
                for message in find_result_messages(name, value):
                    results.append(CheckResult(severity, message))

        return results


def find_result_messages(name: str, result: ExpressionValue) -> List[str]:
    """
    Extracts messages from the value of a queried rule. Following conftest,
    the value may be:

        error { ... }                  -> true
        error = msg { ... }            -> "message"
        error[msg] { ... }             -> ["message", ...]
        error[{"msg": m}] { ... }      -> [{"msg": "message"}, ...]

    Anything else has no extractable message and is dropped.
    """
    value = result.value

    if isinstance(value, bool):
        # Rego only reports boolean rules that are true.
        return [f'rule "{name}" was {str(value).lower()}']

    if isinstance(value, str):
        return [value]

    if not isinstance(value, list):
        logger.warning("unhandled result type '%s' for rule '%s'", type(value).__name__, name)
        return []

    messages = []
    for item in value:
        if isinstance(item, str):
            messages.append(item)
        elif isinstance(item, dict) and isinstance(item.get("msg"), str):
            messages.append(item["msg"])
        else:
            logger.warning("rule '%s' produced a value with no message: %r", name, item)
    return messages


def run_check(driver: CheckDriver, module: PolicyModule, timeout: float,
              input: Any = None, interval: float = 0.5,
              sleep: Callable[[float], None] = time.sleep,
              clock: Callable[[], float] = time.monotonic) -> List[CheckResult]:
    """
    Evaluates the check until it returns no results or `timeout` seconds
    have passed, and returns the results of the final evaluation. The check
    is always evaluated at least once.
    """
    deadline = clock() + timeout

    while True:
        results = driver.eval(module, input)
        if not results:
            return []

        remaining = deadline - clock()
        if remaining <= 0:
            return results

        sleep(min(interval, remaining))
