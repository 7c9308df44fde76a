#!/usr/bin/env python3
"""
KUBEASSAY ADOPTION POOL
-----------------------
The set of objects a test run has taken ownership of. Explicit applies on
the main thread and watch events on informer threads both feed the pool,
so every access goes through its lock.

Events can arrive out of order, so an update is only accepted if it moves
the object's generation forward.

Author: KubeAssay Team
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from kubeassay.core.unstructured import Unstructured
from kubeassay.driver.kube import ResourceDescriptor


@dataclass(frozen=True)
class PoolKey:
    """Object identity: API resource, namespace and name."""
    resource: ResourceDescriptor
    namespace: str
    name: str


def key_for(resource: ResourceDescriptor, obj: Unstructured) -> PoolKey:
    return PoolKey(resource, obj.namespace if resource.namespaced else "", obj.name)


class AdoptionPool:
    """Thread-safe mapping of object identity to its latest snapshot."""

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: Dict[PoolKey, Unstructured] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def __contains__(self, key: PoolKey) -> bool:
        with self._lock:
            return key in self._objects

    def get(self, key: PoolKey) -> Optional[Unstructured]:
        with self._lock:
            return self._objects.get(key)

    def update(self, key: PoolKey, obj: Unstructured) -> bool:
        """
        Stores `obj` unless the pool already holds the same or a newer
        generation. Returns whether the pool changed.
        """
        with self._lock:
            current = self._objects.get(key)
            if current is not None and obj.generation <= current.generation:
                return False
            self._objects[key] = obj
            return True

    def remove(self, key: PoolKey) -> Optional[Unstructured]:
        with self._lock:
            return self._objects.pop(key, None)

    def items(self) -> List[Tuple[PoolKey, Unstructured]]:
        """A copy of the pool contents, in adoption order."""
        with self._lock:
            return list(self._objects.items())

    def clear(self):
        with self._lock:
            self._objects.clear()
