"""
Watch event fan-out.

Handlers are registered with a HandlerRegistry, which hands back a cancel
function. Registration, removal and delivery are serialized on one lock, so
once cancel() returns the handler will not be called again and no delivery
to it is still in flight.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from kubeassay.core.unstructured import Unstructured
from kubeassay.driver.kube import ResourceDescriptor

logger = logging.getLogger("kubeassay.driver")

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"


@dataclass
class EventHandlers:
    """Callbacks for object events. Any of them may be omitted."""
    on_add: Optional[Callable[[ResourceDescriptor, Unstructured], None]] = None
    on_update: Optional[Callable[[ResourceDescriptor, Optional[Unstructured], Unstructured], None]] = None
    on_delete: Optional[Callable[[ResourceDescriptor, Unstructured], None]] = None

    def dispatch(self, event_type: str, resource: ResourceDescriptor,
                 obj: Unstructured, old: Optional[Unstructured] = None):
        if event_type == EVENT_ADDED and self.on_add:
            self.on_add(resource, obj)
        elif event_type == EVENT_MODIFIED and self.on_update:
            self.on_update(resource, old, obj)
        elif event_type == EVENT_DELETED and self.on_delete:
            self.on_delete(resource, obj)


class HandlerRegistry:
    """Sends each event to every registered handler, in no particular order."""

    def __init__(self):
        # Reentrant so that a handler may cancel itself during delivery.
        self.lock = threading.RLock()
        self._handlers: Dict[int, EventHandlers] = {}
        self._tokens = itertools.count()

    def __len__(self) -> int:
        with self.lock:
            return len(self._handlers)

    def add(self, handlers: EventHandlers) -> Callable[[], None]:
        with self.lock:
            token = next(self._tokens)
            self._handlers[token] = handlers

        def cancel():
            with self.lock:
                self._handlers.pop(token, None)

        return cancel

    def clear(self):
        with self.lock:
            self._handlers.clear()

    def deliver(self, event_type: str, resource: ResourceDescriptor,
                obj: Unstructured, old: Optional[Unstructured] = None):
        with self.lock:
            for handlers in list(self._handlers.values()):
                handlers.dispatch(event_type, resource, obj, old)
