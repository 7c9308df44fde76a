import copy
import os
import queue
import re
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from kubeassay.core.errors import ResolutionError
from kubeassay.driver.environment import Environment
from kubeassay.driver.kube import (
    ApiConflictError,
    ApiNotFoundError,
    ResourceDescriptor,
    new_status,
)
from kubeassay.policy.runtime import (
    ExpressionValue,
    PolicyCompileError,
    PolicyModule,
    PolicyParseError,
    PolicyRuntime,
)

# Rules are recognised at the start of a line: `name {`, `name[x] {`,
# `name = x {`, `name := x`, `name if` or `name contains x`.
RULE_HEAD = re.compile(r"^([A-Za-z_]\w*)\s*(?:\[[^\]]*\])?\s*(?:=|:=|\{|if\b|contains\b)", re.MULTILINE)
PACKAGE = re.compile(r"^package\s+([\w.]+)", re.MULTILINE)

COMPILE_ERROR_MARKER = "# compile-error"


class FakePolicyRuntime(PolicyRuntime):
    """
    Stands in for OPA. Modules "parse" if their braces balance, rules are
    found with a regex and rule values come from scripts registered with
    `script()`. Modules without a script behave like the builtin object
    checks: they report `input.error` if it is set.
    """

    def __init__(self):
        self.parse_calls = 0
        self.compile_calls = 0
        self.evaluations: List[str] = []
        self.scripts: List[tuple] = []

    def script(self, marker: str, fn: Callable[[str, Any, Any], Any]):
        """Evaluates rules of modules containing `marker` with fn(rule, data, input)."""
        self.scripts.append((marker, fn))

    def parse(self, source: str, filename: str = "check.rego") -> PolicyModule:
        self.parse_calls += 1
        if source.count("{") != source.count("}"):
            raise PolicyParseError(f"{filename}:1: rego_parse_error: unexpected eof token")

        match = PACKAGE.search(source)
        package = match.group(1) if match else "main"
        rules = [m.group(1) for m in RULE_HEAD.finditer(source)]
        return PolicyModule(source=source, package=package, rules=rules, filename=filename)

    def compile(self, module: PolicyModule) -> None:
        self.compile_calls += 1
        if COMPILE_ERROR_MARKER in module.source:
            raise PolicyCompileError(f"{module.filename}:2: rego_compile_error: var undefined")

    def evaluate(self, module: PolicyModule, query: str, data: Any,
                 input: Any = None) -> List[ExpressionValue]:
        self.evaluations.append(query)
        rule = query.rsplit(".", 1)[1]

        for marker, fn in self.scripts:
            if marker in module.source:
                value = fn(rule, data, input)
                break
        else:
            value = None
            if isinstance(input, dict) and input.get("error"):
                status = input["error"]
                if "NotFound" not in module.source or status.get("reason") != "NotFound":
                    value = [f"{status.get('reason')}: {status.get('message')}"]

        if value is None:
            return []
        return [ExpressionValue(text=query, value=value)]


def descriptor(group, version, resource, kind, namespaced=True) -> ResourceDescriptor:
    return ResourceDescriptor(group=group, version=version, resource=resource,
                              kind=kind, namespaced=namespaced)


CONFIGMAPS = descriptor("", "v1", "configmaps", "ConfigMap")
NAMESPACES = descriptor("", "v1", "namespaces", "Namespace", namespaced=False)
DEPLOYMENTS = descriptor("apps", "v1", "deployments", "Deployment")

KNOWN_RESOURCES = {
    ("v1", "ConfigMap"): CONFIGMAPS,
    ("v1", "Namespace"): NAMESPACES,
    ("apps/v1", "Deployment"): DEPLOYMENTS,
}


def _merge(into: Dict[str, Any], patch: Dict[str, Any]):
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(into.get(key), dict):
            _merge(into[key], value)
        else:
            into[key] = copy.deepcopy(value)


class FakeKubeClient:
    """In-memory API server with just enough behaviour for the object driver."""

    def __init__(self):
        self.objects: Dict[tuple, Dict[str, Any]] = {}
        self.calls: Dict[str, int] = {"create": 0, "patch": 0, "delete": 0}
        self.events: Dict[ResourceDescriptor, "queue.Queue"] = {}
        self.watch_error: Optional[Exception] = None
        self.watching = threading.Event()
        self._version = 0

    def resolve(self, api_version: str, kind: str) -> ResourceDescriptor:
        try:
            return KNOWN_RESOURCES[(api_version, kind)]
        except KeyError:
            raise ResolutionError(api_version, kind, "not served") from None

    def _key(self, desc, namespace, name):
        return (desc, namespace if desc.namespaced else "", name)

    def create(self, desc, body, namespace=""):
        self.calls["create"] += 1
        obj = copy.deepcopy(body)
        meta = obj.setdefault("metadata", {})
        self._version += 1
        if not meta.get("name") and meta.get("generateName"):
            meta["name"] = f"{meta['generateName']}{self._version:05d}"

        key = self._key(desc, namespace, meta.get("name"))
        if key in self.objects:
            raise ApiConflictError(new_status(409, "AlreadyExists", f"{desc.resource} \"{key[2]}\" already exists"))

        meta["generation"] = 1
        meta["uid"] = f"uid-{self._version}"
        meta["resourceVersion"] = str(self._version)
        meta["creationTimestamp"] = f"2024-01-01T00:00:{self._version:02d}Z"
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def patch(self, desc, name, body, namespace=""):
        self.calls["patch"] += 1
        key = self._key(desc, namespace, name)
        if key not in self.objects:
            raise ApiNotFoundError(new_status(404, "NotFound", f"{desc.resource} \"{name}\" not found"))
        obj = self.objects[key]
        _merge(obj, body)
        self._version += 1
        obj["metadata"]["generation"] += 1
        obj["metadata"]["resourceVersion"] = str(self._version)
        return copy.deepcopy(obj)

    def delete(self, desc, name, namespace="", propagation="Foreground"):
        self.calls["delete"] += 1
        key = self._key(desc, namespace, name)
        if key not in self.objects:
            raise ApiNotFoundError(new_status(404, "NotFound", f"{desc.resource} \"{name}\" not found"))
        del self.objects[key]
        return {"apiVersion": "v1", "kind": "Status", "status": "Success"}

    def get(self, desc, name, namespace=""):
        key = self._key(desc, namespace, name)
        if key not in self.objects:
            raise ApiNotFoundError(new_status(404, "NotFound", f"{desc.resource} \"{name}\" not found"))
        return copy.deepcopy(self.objects[key])

    def list(self, desc, namespace="", label_selector=""):
        wanted = dict(p.split("=", 1) for p in label_selector.split(",") if p)
        items = []
        for (d, ns, _), obj in self.objects.items():
            if d != desc or (namespace and ns != namespace):
                continue
            labels = obj.get("metadata", {}).get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                items.append(copy.deepcopy(obj))
        return items

    def namespace_exists(self, name):
        return name == "default" or self._key(NAMESPACES, "", name) in self.objects

    def push(self, desc, event_type, obj):
        self.events.setdefault(desc, queue.Queue()).put((event_type, obj))

    def watch(self, desc, label_selector, stop):
        events = self.events.setdefault(desc, queue.Queue())
        self.watching.set()
        if self.watch_error is not None:
            raise self.watch_error
        while not stop.is_set():
            try:
                event = events.get(timeout=0.01)
            except queue.Empty:
                continue
            yield event


@pytest.fixture
def runtime():
    return FakePolicyRuntime()


@pytest.fixture
def kube():
    return FakeKubeClient()


@pytest.fixture
def env():
    return Environment(run_id="run-1234")
