#!/usr/bin/env python3
"""
KUBEASSAY KUBERNETES CLIENT
---------------------------
Collects the Kubernetes client interfaces the harness needs behind one
small surface: resource discovery, CRUD on unstructured objects and
long-lived watch streams.

API failures are translated into ApiError exceptions carrying the server's
Status document, so callers never depend on the client library's exception
types. A server that cannot be reached raises TransportError instead.

Author: KubeAssay Team
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from urllib3.exceptions import HTTPError

from kubeassay.core.errors import ResolutionError, TransportError

logger = logging.getLogger("kubeassay.driver")

# Server-side timeout for each watch request. Streams are re-established
# from the last seen resource version, so this only bounds how long a
# stopped informer can linger.
WATCH_TIMEOUT_SECONDS = 10

STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"
MERGE_PATCH = "application/merge-patch+json"

# API groups served by the core API server. Only these understand
# strategic merge patches; custom resources need a JSON merge patch.
BUILTIN_GROUPS = {
    "",
    "admissionregistration.k8s.io",
    "apiextensions.k8s.io",
    "apiregistration.k8s.io",
    "apps",
    "authentication.k8s.io",
    "authorization.k8s.io",
    "autoscaling",
    "batch",
    "certificates.k8s.io",
    "coordination.k8s.io",
    "discovery.k8s.io",
    "events.k8s.io",
    "flowcontrol.apiserver.k8s.io",
    "networking.k8s.io",
    "node.k8s.io",
    "policy",
    "rbac.authorization.k8s.io",
    "scheduling.k8s.io",
    "storage.k8s.io",
}


class ApiError(Exception):
    """The API server rejected a request. `status` is a v1/Status document."""

    def __init__(self, status: Dict[str, Any]):
        super().__init__(status.get("message") or status.get("reason") or "API request failed")
        self.status = status

    @property
    def code(self) -> int:
        return int(self.status.get("code") or 0)

    @property
    def reason(self) -> str:
        return str(self.status.get("reason") or "")


class ApiConflictError(ApiError):
    """The object already exists."""


class ApiNotFoundError(ApiError):
    """The object does not exist."""


def new_status(code: int, reason: str, message: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Status",
        "status": "Failure",
        "code": code,
        "reason": reason,
        "message": message,
    }


def _api_error(e: Any) -> ApiError:
    """Converts a client library exception into an ApiError."""
    status = None
    body = getattr(e, "body", None)
    if body:
        try:
            decoded = json.loads(body)
        except (TypeError, ValueError):
            decoded = None
        if isinstance(decoded, dict) and decoded.get("kind") == "Status":
            status = decoded

    if status is None:
        code = getattr(e, "status", None) or 0
        status = new_status(code, str(getattr(e, "reason", "") or "Unknown"), str(body or e))

    code = int(status.get("code") or getattr(e, "status", 0) or 0)
    if code == 409 and status.get("reason") == "AlreadyExists":
        return ApiConflictError(status)
    if code == 404:
        return ApiNotFoundError(status)
    return ApiError(status)


@dataclass(frozen=True)
class ResourceDescriptor:
    """An API resource: the group, version and plural name serving a kind."""
    group: str
    version: str
    resource: str
    kind: str
    namespaced: bool

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def patch_type(self) -> str:
        return STRATEGIC_MERGE_PATCH if self.group in BUILTIN_GROUPS else MERGE_PATCH


class KubeClient:
    """Kubernetes access for the object driver and the CLI."""

    def __init__(self, api_client: client.ApiClient, dynamic: Optional[DynamicClient] = None):
        self.api_client = api_client
        self.dynamic = dynamic or DynamicClient(api_client)
        self.core = client.CoreV1Api(api_client)
        self._resources: Dict[ResourceDescriptor, Any] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, kubeconfig: Optional[str] = None, context: Optional[str] = None,
                    user_agent: str = "") -> "KubeClient":
        """Builds a client from the default kubeconfig, falling back to in-cluster config."""
        try:
            config.load_kube_config(config_file=kubeconfig, context=context)
        except ConfigException:
            if kubeconfig or context:
                raise
            logger.info("no kubeconfig found, trying in-cluster configuration")
            config.load_incluster_config()

        api_client = client.ApiClient()
        if user_agent:
            api_client.user_agent = user_agent
        return cls(api_client)

    # --- Discovery ---

    def resolve(self, api_version: str, kind: str) -> ResourceDescriptor:
        """Maps a kind to its API resource. Raises ResolutionError."""
        try:
            resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ResolutionError(api_version, kind, str(e)) from e
        except (ApiException, DynamicApiError) as e:
            raise ResolutionError(api_version, kind, _api_error(e).status.get("message", "")) from e
        except (HTTPError, OSError) as e:
            raise TransportError(f"API discovery failed: {e}") from e

        desc = ResourceDescriptor(
            group=resource.group or "",
            version=resource.api_version,
            resource=resource.name,
            kind=resource.kind,
            namespaced=bool(resource.namespaced),
        )
        with self._lock:
            self._resources[desc] = resource
        return desc

    def _resource(self, desc: ResourceDescriptor) -> Any:
        with self._lock:
            resource = self._resources.get(desc)
        if resource is None:
            self.resolve(desc.api_version, desc.kind)
            with self._lock:
                resource = self._resources[desc]
        return resource

    # --- Object operations ---

    def _call(self, verb: str, desc: ResourceDescriptor, **kwargs) -> Dict[str, Any]:
        method = getattr(self.dynamic, verb)
        try:
            result = method(self._resource(desc), **kwargs)
        except (ApiException, DynamicApiError) as e:
            raise _api_error(e) from e
        except (HTTPError, OSError) as e:
            raise TransportError(f"{verb} {desc.resource} failed: {e}") from e
        return result.to_dict() if hasattr(result, "to_dict") else dict(result or {})

    def create(self, desc: ResourceDescriptor, body: Dict[str, Any], namespace: str = "") -> Dict[str, Any]:
        return self._call("create", desc, body=body, namespace=namespace or None)

    def patch(self, desc: ResourceDescriptor, name: str, body: Dict[str, Any],
              namespace: str = "") -> Dict[str, Any]:
        return self._call("patch", desc, body=body, name=name, namespace=namespace or None,
                          content_type=desc.patch_type)

    def delete(self, desc: ResourceDescriptor, name: str, namespace: str = "",
               propagation: str = "Foreground") -> Dict[str, Any]:
        body = {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": propagation}
        return self._call("delete", desc, name=name, namespace=namespace or None, body=body)

    def get(self, desc: ResourceDescriptor, name: str, namespace: str = "") -> Dict[str, Any]:
        return self._call("get", desc, name=name, namespace=namespace or None)

    def list(self, desc: ResourceDescriptor, namespace: str = "",
             label_selector: str = "") -> List[Dict[str, Any]]:
        result = self._call("get", desc, namespace=namespace or None,
                            label_selector=label_selector or None)
        items = result.get("items") or []
        for item in items:
            # List items come back without their type metadata.
            item.setdefault("apiVersion", desc.api_version)
            item.setdefault("kind", desc.kind)
        return items

    def namespace_exists(self, name: str) -> bool:
        try:
            self.core.read_namespace(name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise _api_error(e) from e
        except (HTTPError, OSError) as e:
            raise TransportError(f"reading namespace {name} failed: {e}") from e
        return True

    def list_managed(self, label_selector: str) -> List[Dict[str, Any]]:
        """Lists objects of every listable resource matching the selector."""
        objects = []
        for resource in self.dynamic.resources.search():
            verbs = getattr(resource, "verbs", None) or []
            if "list" not in verbs or "/" in (getattr(resource, "name", "") or ""):
                continue
            desc = ResourceDescriptor(
                group=resource.group or "",
                version=resource.api_version,
                resource=resource.name,
                kind=resource.kind,
                namespaced=bool(resource.namespaced),
            )
            with self._lock:
                self._resources[desc] = resource
            try:
                objects.extend(self.list(desc, label_selector=label_selector))
            except ApiError as e:
                logger.debug("skipping %s: %s", desc.resource, e)
        return objects

    # --- Watches ---

    def watch(self, desc: ResourceDescriptor, label_selector: str,
              stop: threading.Event) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """
        Yields (event type, object) pairs until `stop` is set. Streams that
        end are resumed from the last resource version; an expired version
        (HTTP 410) restarts the watch, which replays existing objects as
        ADDED events.
        """
        resource = self._resource(desc)
        resource_version = None

        while not stop.is_set():
            watcher = watch.Watch()
            try:
                for event in self.dynamic.watch(
                        resource,
                        label_selector=label_selector or None,
                        resource_version=resource_version,
                        timeout=WATCH_TIMEOUT_SECONDS,
                        watcher=watcher):
                    if stop.is_set():
                        watcher.stop()
                        return

                    event_type = event.get("type")
                    raw = event.get("raw_object") or {}

                    if event_type == "ERROR":
                        if raw.get("code") == 410:
                            resource_version = None
                            break
                        raise _api_error(_StatusCarrier(raw))

                    resource_version = (raw.get("metadata") or {}).get("resourceVersion") or resource_version
                    if event_type == "BOOKMARK":
                        continue

                    raw.setdefault("apiVersion", desc.api_version)
                    raw.setdefault("kind", desc.kind)
                    yield event_type, raw

            except (ApiException, DynamicApiError) as e:
                if getattr(e, "status", None) == 410:
                    resource_version = None
                    continue
                logger.warning("watch on %s failed: %s", desc.resource, _api_error(e))
                stop.wait(1.0)
            except (ApiError, HTTPError, OSError) as e:
                logger.warning("watch on %s failed: %s", desc.resource, e)
                stop.wait(1.0)


class _StatusCarrier:
    """Adapts a Status object from a watch ERROR event to `_api_error`."""

    def __init__(self, status: Dict[str, Any]):
        self.body = json.dumps(status)
        self.status = status.get("code")
        self.reason = status.get("reason")

    def __str__(self) -> str:
        return self.body
