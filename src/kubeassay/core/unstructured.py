#!/usr/bin/env python3
"""
KUBEASSAY UNSTRUCTURED OBJECTS
------------------------------
A thin accessor layer over the plain nested dictionaries that Kubernetes
objects decode into. The dictionary is the source of truth; the helpers
only know where the conventional fields live.

Author: KubeAssay Team
"""

import copy
from typing import Any, Dict, Optional

from kubeassay.core.models import ObjectReference

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
ANNOTATION_RUN_ID = "kubeassay/run-id"
MANAGER_NAME = "kubeassay"


class Unstructured:
    """A Kubernetes object of any kind, held as a plain dictionary."""

    def __init__(self, content: Optional[Dict[str, Any]] = None):
        self.content = content if content is not None else {}

    def __repr__(self) -> str:
        return f"Unstructured({self.kind}/{self.namespace}/{self.name})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Unstructured) and self.content == other.content

    def copy(self) -> "Unstructured":
        return Unstructured(copy.deepcopy(self.content))

    # --- Type metadata ---

    @property
    def api_version(self) -> str:
        return str(self.content.get("apiVersion") or "")

    @property
    def kind(self) -> str:
        return str(self.content.get("kind") or "")

    @property
    def group(self) -> str:
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        return ""

    @property
    def version(self) -> str:
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[1]
        return self.api_version

    # --- Object metadata ---

    def _metadata(self, create: bool = False) -> Dict[str, Any]:
        meta = self.content.get("metadata")
        if not isinstance(meta, dict):
            if not create:
                return {}
            meta = {}
            self.content["metadata"] = meta
        return meta

    @property
    def name(self) -> str:
        return str(self._metadata().get("name") or "")

    @name.setter
    def name(self, value: str):
        self._metadata(create=True)["name"] = value

    @property
    def generate_name(self) -> str:
        return str(self._metadata().get("generateName") or "")

    @property
    def namespace(self) -> str:
        return str(self._metadata().get("namespace") or "")

    @namespace.setter
    def namespace(self, value: str):
        self._metadata(create=True)["namespace"] = value

    @property
    def uid(self) -> str:
        return str(self._metadata().get("uid") or "")

    @property
    def resource_version(self) -> str:
        return str(self._metadata().get("resourceVersion") or "")

    @property
    def generation(self) -> int:
        try:
            return int(self._metadata().get("generation") or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def creation_timestamp(self) -> str:
        return str(self._metadata().get("creationTimestamp") or "")

    @property
    def labels(self) -> Dict[str, str]:
        labels = self._metadata().get("labels")
        return dict(labels) if isinstance(labels, dict) else {}

    @property
    def annotations(self) -> Dict[str, str]:
        annotations = self._metadata().get("annotations")
        return dict(annotations) if isinstance(annotations, dict) else {}

    def set_label(self, key: str, value: str):
        _ensure_map(self._metadata(create=True), "labels")[key] = value

    def set_annotation(self, key: str, value: str):
        _ensure_map(self._metadata(create=True), "annotations")[key] = value

    @property
    def run_id(self) -> str:
        """The unique test run that created this object, if any."""
        return self.annotations.get(ANNOTATION_RUN_ID, "")

    def reference(self) -> ObjectReference:
        return ObjectReference(
            name=self.name,
            namespace=self.namespace,
            group=self.group,
            version=self.version,
            kind=self.kind,
        )


def _ensure_map(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def dig(content: Any, *path: str) -> Any:
    """Walks nested mappings, returning None at the first missing step."""
    for key in path:
        if not isinstance(content, dict):
            return None
        content = content.get(key)
    return content


def new_namespace(name: str) -> Unstructured:
    """Returns a v1/Namespace object named `name`."""
    return Unstructured({
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name},
    })
