"""Declarative resource store.

The reconciler only needs a handful of operations from the store: read a
resource, list resources of a kind, persist status, and manage finalizers.
``MemoryStore`` implements them in process for the standalone operator and
for tests; a persistent backend only has to satisfy ``ResourceStore``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol, TypeVar

from .models import ManagedResource, ResourceKey, ResourceStatus

logger = logging.getLogger(__name__)

ResourceT = TypeVar("ResourceT", bound=ManagedResource)

Listener = Callable[[ResourceKey], None]


class NotFoundError(KeyError):
    """Raised when a resource does not exist in the store."""

    pass


class ResourceStore(Protocol):
    """Operations the reconciler performs against the store."""

    def get(self, key: ResourceKey) -> ManagedResource: ...

    def find(self, key: ResourceKey) -> ManagedResource | None: ...

    def list(self, kind: str, namespace: str | None = None) -> list[ManagedResource]: ...

    def apply(self, resource: ManagedResource) -> None: ...

    def patch_status(self, key: ResourceKey, status: ResourceStatus) -> None: ...

    def add_finalizer(self, key: ResourceKey, finalizer: str) -> None: ...

    def remove_finalizer(self, key: ResourceKey, finalizer: str) -> None: ...

    def request_deletion(self, key: ResourceKey) -> None: ...


class WatchableStore(ResourceStore, Protocol):
    """A store the dispatcher can enumerate and watch for changes."""

    def keys(self) -> list[ResourceKey]: ...

    def subscribe(self, listener: Listener) -> None: ...


class MemoryStore:
    """Thread-safe in-memory store.

    Every read returns a deep copy so a reconciliation pass can mutate its
    working copy freely; nothing is visible to other passes until written
    back through ``patch_status``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[ResourceKey, ManagedResource] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked with the key of every changed resource."""
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, key: ResourceKey) -> None:
        for listener in list(self._listeners):
            listener(key)

    def keys(self) -> list[ResourceKey]:
        with self._lock:
            return sorted(self._objects.keys())

    def get(self, key: ResourceKey) -> ManagedResource:
        with self._lock:
            resource = self._objects.get(key)
            if resource is None:
                raise NotFoundError(str(key))
            return resource.model_copy(deep=True)

    def find(self, key: ResourceKey) -> ManagedResource | None:
        try:
            return self.get(key)
        except NotFoundError:
            return None

    def list(self, kind: str, namespace: str | None = None) -> list[ManagedResource]:
        with self._lock:
            return [
                resource.model_copy(deep=True)
                for key, resource in sorted(self._objects.items())
                if key.kind == kind and (namespace is None or key.namespace == namespace)
            ]

    def apply(self, resource: ManagedResource) -> None:
        """Create a resource or replace its desired state.

        Status, finalizers and a pending deletion request of an existing
        object are preserved: they belong to the reconciler.
        """
        key = resource.key
        incoming = resource.model_copy(deep=True)
        with self._lock:
            existing = self._objects.get(key)
            if existing is not None:
                incoming.status = existing.status.model_copy(deep=True)
                incoming.metadata.finalizers = list(existing.metadata.finalizers)
                incoming.metadata.deletion_requested = existing.metadata.deletion_requested
            self._objects[key] = incoming
        logger.debug("Applied resource", extra={"key": str(key)})
        self._notify(key)

    def patch_status(self, key: ResourceKey, status: ResourceStatus) -> None:
        with self._lock:
            resource = self._objects.get(key)
            if resource is None:
                raise NotFoundError(str(key))
            resource.status = status.model_copy(deep=True)

    def add_finalizer(self, key: ResourceKey, finalizer: str) -> None:
        with self._lock:
            resource = self._objects.get(key)
            if resource is None:
                raise NotFoundError(str(key))
            if finalizer not in resource.metadata.finalizers:
                resource.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, key: ResourceKey, finalizer: str) -> None:
        """Remove a finalizer, erasing the object once nothing blocks deletion."""
        erased = False
        with self._lock:
            resource = self._objects.get(key)
            if resource is None:
                return
            if finalizer in resource.metadata.finalizers:
                resource.metadata.finalizers.remove(finalizer)
            if resource.metadata.deletion_requested and not resource.metadata.finalizers:
                del self._objects[key]
                erased = True
        if erased:
            logger.info("Resource erased from store", extra={"key": str(key)})
            self._notify(key)

    def request_deletion(self, key: ResourceKey) -> None:
        """Mark a resource for deletion; erase it at once if it has no finalizers."""
        with self._lock:
            resource = self._objects.get(key)
            if resource is None:
                return
            if resource.metadata.finalizers:
                resource.metadata.deletion_requested = True
            else:
                del self._objects[key]
        self._notify(key)
