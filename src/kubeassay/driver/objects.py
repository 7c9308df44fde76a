#!/usr/bin/env python3
"""
KUBEASSAY OBJECT DRIVERS
------------------------
An ObjectDriver owns the lifecycle of the Kubernetes objects a test
document creates: applying and deleting them, adopting what the cluster
reports back, fanning watch events out to subscribers and cleaning up at
the end.

Two drivers share this surface: KubeObjectDriver talks to a live cluster
and DryRunObjectDriver simulates one without writing anything.

Locking: the watcher lock (HandlerRegistry.lock) is always taken before
the pool lock, and the pool lock is only ever held for a single pool
operation.

Author: KubeAssay Team
"""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from kubeassay.core.errors import TransportError
from kubeassay.core.models import ObjectReference, OperationResult
from kubeassay.core.unstructured import LABEL_MANAGED_BY, Unstructured
from kubeassay.driver.environment import Environment
from kubeassay.driver.handlers import (
    EVENT_ADDED,
    EVENT_DELETED,
    EVENT_MODIFIED,
    EventHandlers,
    HandlerRegistry,
)
from kubeassay.driver.kube import (
    ApiConflictError,
    ApiError,
    ApiNotFoundError,
    KubeClient,
    ResourceDescriptor,
    new_status,
)
from kubeassay.driver.pool import AdoptionPool, PoolKey, key_for

logger = logging.getLogger("kubeassay.driver")

DEFAULT_NAMESPACE = "default"

# Exit status used when a background thread hits an unrecoverable error.
EX_SOFTWARE = 70

# How long done() waits for informer threads to finish.
INFORMER_STOP_TIMEOUT = 1.0


def abort_process(message: str):
    """
    Background threads have no caller to report to, so a broken invariant
    there ends the process.
    """
    logger.critical("aborting: %s", message)
    logging.shutdown()
    os._exit(EX_SOFTWARE)


class ObjectDriver(ABC):
    """The capability set the runner drives objects through."""

    def __init__(self, env: Environment):
        self.env = env
        self.pool = AdoptionPool()
        self.handlers = HandlerRegistry()
        self._done = False

    @abstractmethod
    def resource_for(self, obj: Unstructured) -> ResourceDescriptor:
        """Maps an object to its API resource. Raises ResolutionError."""

    @abstractmethod
    def apply(self, obj: Unstructured) -> OperationResult:
        """Creates or updates the object."""

    @abstractmethod
    def delete(self, obj: Unstructured) -> OperationResult:
        """Deletes the object."""

    @abstractmethod
    def namespace_exists(self, name: str) -> bool:
        """Tests whether the named namespace is present."""

    @abstractmethod
    def select(self, obj: Unstructured) -> List[Unstructured]:
        """
        Finds objects created by this test run that have the same kind,
        namespace and labels as `obj`, newest first.
        """

    @abstractmethod
    def _delete_adopted(self, key: PoolKey, obj: Unstructured) -> Optional[dict]:
        """Deletes one adopted object, returning a Status on failure."""

    def watch(self, handlers: EventHandlers) -> Callable[[], None]:
        """Subscribes to object events. Returns a cancel function."""
        return self.handlers.add(handlers)

    def adopt(self, obj: Unstructured, resource: Optional[ResourceDescriptor] = None) -> bool:
        """Takes ownership of the object so that cleanup will delete it."""
        resource = resource or self.resource_for(obj)
        return self.pool.update(key_for(resource, obj), obj)

    def delete_all(self) -> List[Tuple[ObjectReference, dict]]:
        """
        Deletes every adopted object, most recently adopted first so that
        namespaces go after their contents. Objects that are already gone
        are ignored. Returns the objects that could not be deleted.
        """
        failures = []
        for key, obj in reversed(self.pool.items()):
            status = self._delete_adopted(key, obj)
            if status is not None:
                failures.append((obj.reference(), status))
                continue
            self.pool.remove(key)
        return failures

    def done(self):
        """Releases watches and adopted state. Safe to call more than once."""
        if self._done:
            return
        self._done = True
        self.handlers.clear()
        self.pool.clear()

    def _check_live(self):
        if self._done:
            raise RuntimeError("object driver used after done()")

    def _default_namespace(self, resource: ResourceDescriptor, obj: Unstructured):
        if resource.namespaced and not obj.namespace:
            obj.namespace = DEFAULT_NAMESPACE

    def _on_event(self, event_type: str, resource: ResourceDescriptor, obj: Unstructured):
        """Folds a watch event into the pool, then fans it out."""
        key = key_for(resource, obj)
        old = self.pool.get(key)

        if event_type == EVENT_DELETED:
            self.pool.remove(key)
        elif obj.run_id == self.env.run_id:
            # Only objects carrying our run ID (including pods spawned from
            # our templates) are ours to clean up.
            self.pool.update(key, obj)

        self.handlers.deliver(event_type, resource, obj, old)


class KubeObjectDriver(ObjectDriver):
    """Drives objects in a live cluster."""

    def __init__(self, kube: KubeClient, env: Environment,
                 abort: Callable[[str], None] = abort_process):
        super().__init__(env)
        self.kube = kube
        self.abort = abort
        self._informers: Dict[ResourceDescriptor, threading.Thread] = {}
        self._stop = threading.Event()
        self.stop_timeout = INFORMER_STOP_TIMEOUT

    def resource_for(self, obj: Unstructured) -> ResourceDescriptor:
        return self.kube.resolve(obj.api_version, obj.kind)

    def namespace_exists(self, name: str) -> bool:
        return self.kube.namespace_exists(name)

    def apply(self, obj: Unstructured) -> OperationResult:
        self._check_live()
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)
        self._start_informer(resource)

        result = OperationResult(target=obj.reference())
        try:
            if obj.name and key_for(resource, obj) in self.pool:
                latest = self._patch_or_create(resource, obj)
            else:
                latest = self._create_or_patch(resource, obj)
        except ApiError as e:
            result.error = e.status
            return result

        result.latest = Unstructured(latest)
        self.pool.update(key_for(resource, result.latest), result.latest)
        return result

    def _create_or_patch(self, resource: ResourceDescriptor, obj: Unstructured) -> dict:
        try:
            return self.kube.create(resource, obj.content, namespace=obj.namespace)
        except ApiConflictError:
            logger.info("%s exists, patching", obj.reference())
            return self.kube.patch(resource, obj.name, obj.content, namespace=obj.namespace)

    def _patch_or_create(self, resource: ResourceDescriptor, obj: Unstructured) -> dict:
        try:
            return self.kube.patch(resource, obj.name, obj.content, namespace=obj.namespace)
        except ApiNotFoundError:
            logger.info("%s is gone, creating", obj.reference())
            return self.kube.create(resource, obj.content, namespace=obj.namespace)

    def delete(self, obj: Unstructured) -> OperationResult:
        self._check_live()
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)

        result = OperationResult(target=obj.reference())
        if not obj.name:
            result.error = new_status(422, "Invalid", "cannot delete an object with no name")
            return result

        try:
            latest = self.kube.delete(resource, obj.name, namespace=obj.namespace)
        except ApiError as e:
            result.error = e.status
            return result

        if latest.get("kind") != "Status":
            result.latest = Unstructured(latest)
        self.pool.remove(key_for(resource, obj))
        return result

    def select(self, obj: Unstructured) -> List[Unstructured]:
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)
        selector = ",".join(f"{k}={v}" for k, v in sorted(obj.labels.items()))

        found = [
            Unstructured(item)
            for item in self.kube.list(resource, namespace=obj.namespace, label_selector=selector)
        ]
        found = [o for o in found if o.run_id == self.env.run_id]
        return sorted(found, key=lambda o: o.creation_timestamp, reverse=True)

    def _delete_adopted(self, key: PoolKey, obj: Unstructured) -> Optional[dict]:
        try:
            self.kube.delete(key.resource, key.name, namespace=key.namespace)
        except ApiNotFoundError:
            return None
        except ApiError as e:
            return e.status
        except TransportError as e:
            return new_status(0, "ServiceUnavailable", str(e))
        return None

    def _start_informer(self, resource: ResourceDescriptor):
        """Starts watching a resource the first time it is used."""
        with self.handlers.lock:
            if resource in self._informers:
                return
            thread = threading.Thread(
                target=self._run_informer,
                args=(resource,),
                name=f"informer-{resource.resource}",
                daemon=True,
            )
            self._informers[resource] = thread

        logger.info("starting informer for %s", resource.resource)
        thread.start()

    def _run_informer(self, resource: ResourceDescriptor):
        selector = f"{LABEL_MANAGED_BY}={self.env.manager}"
        try:
            for event_type, raw in self.kube.watch(resource, selector, self._stop):
                if event_type not in (EVENT_ADDED, EVENT_MODIFIED, EVENT_DELETED):
                    continue
                if self._stop.is_set():
                    return
                self._on_event(event_type, resource, Unstructured(raw))
        except Exception as e:  # pylint: disable=broad-except
            self.abort(f"informer for {resource.resource} failed: {e}")

    def done(self):
        if self._done:
            return
        self._stop.set()
        with self.handlers.lock:
            informers = list(self._informers.values())
            self._informers.clear()

        # Idle streams only notice the stop flag when the server ends them,
        # so all informers share one deadline.
        deadline = time.monotonic() + self.stop_timeout
        for thread in informers:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.debug("informer %s will exit when its watch stream ends", thread.name)
        super().done()



# Kinds that are never namespaced. Used to guess resource scope when there
# is no API server to ask.
CLUSTER_SCOPED_KINDS = {
    "APIService",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "Node",
    "PersistentVolume",
    "PriorityClass",
    "RuntimeClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
}


def guess_resource(api_version: str, kind: str) -> ResourceDescriptor:
    """Derives a plausible API resource for a kind without discovery."""
    group, _, version = api_version.rpartition("/")
    plural = kind.lower()
    if plural.endswith("y") and not plural.endswith(("ay", "ey", "oy", "uy")):
        plural = plural[:-1] + "ies"
    elif plural.endswith(("s", "x", "ch", "sh")):
        plural = plural + "es"
    else:
        plural = plural + "s"
    return ResourceDescriptor(
        group=group,
        version=version,
        resource=plural,
        kind=kind,
        namespaced=kind not in CLUSTER_SCOPED_KINDS,
    )


class DryRunObjectDriver(ObjectDriver):
    """
    Simulates a cluster that accepts everything. Objects are echoed back
    with server-populated metadata and watch events are delivered
    synchronously, so checks still see the state a real run would produce.
    """

    def __init__(self, env: Environment):
        super().__init__(env)
        self._objects: Dict[PoolKey, Unstructured] = {}
        self._counter = 0

    def resource_for(self, obj: Unstructured) -> ResourceDescriptor:
        return guess_resource(obj.api_version, obj.kind)

    def namespace_exists(self, name: str) -> bool:
        if name == DEFAULT_NAMESPACE:
            return True
        return any(key.resource.kind == "Namespace" and key.name == name for key in self._objects)

    def apply(self, obj: Unstructured) -> OperationResult:
        self._check_live()
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)

        result = OperationResult(target=obj.reference())
        latest = obj.copy()
        self._counter += 1
        if not latest.name and latest.generate_name:
            latest.name = f"{latest.generate_name}{self._counter:05d}"
        if not latest.name:
            result.error = new_status(422, "Invalid", "name or generateName is required")
            return result

        key = key_for(resource, latest)
        current = self._objects.get(key)
        meta = latest.content.setdefault("metadata", {})
        meta["resourceVersion"] = str(self._counter)
        meta["generation"] = (current.generation if current else 0) + 1
        meta["uid"] = current.uid if current else f"dry-run-{self._counter}"
        self._objects[key] = latest

        result.latest = latest
        self._on_event(EVENT_MODIFIED if current else EVENT_ADDED, resource, latest)
        # Explicitly applied objects are adopted whatever their run ID.
        self.pool.update(key, latest)
        return result

    def delete(self, obj: Unstructured) -> OperationResult:
        self._check_live()
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)
        key = key_for(resource, obj)

        result = OperationResult(target=obj.reference())
        current = self._objects.pop(key, None)
        if current is None:
            result.error = new_status(404, "NotFound", f"{resource.resource} \"{obj.name}\" not found")
            return result

        self._on_event(EVENT_DELETED, resource, current)
        return result

    def select(self, obj: Unstructured) -> List[Unstructured]:
        resource = self.resource_for(obj)
        self._default_namespace(resource, obj)
        wanted = obj.labels
        found = [
            o for key, o in self._objects.items()
            if key.resource == resource
            and key.namespace == obj.namespace
            and o.run_id == self.env.run_id
            and all(o.labels.get(k) == v for k, v in wanted.items())
        ]
        return list(reversed(found))

    def _delete_adopted(self, key: PoolKey, obj: Unstructured) -> Optional[dict]:
        current = self._objects.pop(key, None)
        if current is not None:
            self._on_event(EVENT_DELETED, key.resource, current)
        return None
