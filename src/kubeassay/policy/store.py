#!/usr/bin/env python3
"""
KUBEASSAY DATA STORE
--------------------
An in-memory, path-addressed JSON document that backs the `data` tree seen
by Rego checks. Watch callbacks write into it from background threads while
the main loop reads snapshots for evaluation, so every access happens inside
a transaction.

Write transactions work on a private copy of the tree and swap it in on
commit; readers only ever see whole committed trees.

Author: KubeAssay Team
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List


class StoreError(Exception):
    """A store operation failed."""


class StoreNotFoundError(StoreError):
    """The addressed path (or one of its parents) does not exist."""

    def __init__(self, path: str):
        super().__init__(f"storage path not found: {path}")
        self.path = path


def parse_path(where: str) -> List[str]:
    """Splits "/a/b/c" into ["a", "b", "c"]. "/" is the root."""
    if not where.startswith("/"):
        raise StoreError(f"storage path must be absolute: '{where}'")
    return [p for p in where.split("/") if p]


def format_path(parts: List[str]) -> str:
    return "/" + "/".join(parts)


class Transaction:
    """A unit of reads and writes against one version of the tree."""

    def __init__(self, root: Dict[str, Any], write: bool):
        self.write = write
        self.root = copy.deepcopy(root) if write else root

    def _parent(self, parts: List[str]) -> Dict[str, Any]:
        node: Any = self.root
        for i, key in enumerate(parts[:-1]):
            if not isinstance(node, dict) or key not in node:
                raise StoreNotFoundError(format_path(parts[:i + 1]))
            node = node[key]
        if not isinstance(node, dict):
            raise StoreNotFoundError(format_path(parts[:-1]))
        return node

    def read(self, parts: List[str]) -> Any:
        if not parts:
            return self.root
        parent = self._parent(parts)
        if parts[-1] not in parent:
            raise StoreNotFoundError(format_path(parts))
        return parent[parts[-1]]

    def _check_writable(self):
        if not self.write:
            raise StoreError("write in a read-only transaction")

    def add(self, parts: List[str], value: Any):
        """Sets the value, creating the leaf. Parents must already exist."""
        self._check_writable()
        if not parts:
            self.root = _as_root(value)
            return
        self._parent(parts)[parts[-1]] = copy.deepcopy(value)

    def replace(self, parts: List[str], value: Any):
        """Sets the value of an existing leaf."""
        self._check_writable()
        if not parts:
            self.root = _as_root(value)
            return
        parent = self._parent(parts)
        if parts[-1] not in parent:
            raise StoreNotFoundError(format_path(parts))
        parent[parts[-1]] = copy.deepcopy(value)

    def remove(self, parts: List[str]):
        self._check_writable()
        if not parts:
            self.root = {}
            return
        parent = self._parent(parts)
        if parts[-1] not in parent:
            raise StoreNotFoundError(format_path(parts))
        del parent[parts[-1]]


def _as_root(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise StoreError("the root document must be an object")
    return copy.deepcopy(value)


class DataStore:
    """Transactional in-memory JSON tree."""

    def __init__(self, initial: Dict[str, Any] = None):
        self._root: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._write_lock = threading.Lock()

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Transaction]:
        """
        Opens a transaction. Write transactions are serialized and commit
        when the block exits normally; an exception aborts them.
        """
        if not write:
            yield Transaction(self._root, write=False)
            return

        with self._write_lock:
            txn = Transaction(self._root, write=True)
            yield txn
            # Commit. Readers holding the previous root keep a consistent view.
            self._root = txn.root

    def read(self, where: str) -> Any:
        with self.transaction() as txn:
            return copy.deepcopy(txn.read(parse_path(where)))

    def snapshot(self) -> Dict[str, Any]:
        """The whole committed document, safe to hand to an evaluator."""
        return self._root
