"""Per-resource reconciliation.

``Reconciler.reconcile`` runs one pass for one resource key:

1. Fetch the resource; a resource that no longer exists needs nothing
2. Route to the deletion flow when deletion was requested
3. Persist an initial Pending status before any other work
4. Add the kind's finalizer before touching anything in the cloud
5. Resolve the cloud credentials the resource references
6. Run the kind's ensure-steps and derive the overall state from the result
7. Persist status, on every path including errors

The pass never sleeps. Waiting is expressed as a requeue in the returned
``ReconcileResult`` and carried out by the dispatcher.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from .config import CREDENTIALS_NOT_READY_REQUEUE_SECONDS, Config
from .controllers import account, cluster, network, nodegroup
from .credentials import Credentials, CredentialResolver
from .engine import KindHandler, ReconcileContext, ReconcileResult, run_steps
from .errors import FatalConfigurationError, PermissionDeniedError
from .models import ManagedResource, ResourceKey, Status
from .store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)

COMPONENT_CREDENTIALS = "Credentials"

PERMISSION_DENIED_MESSAGE = "You do not have permission to the credentials"

HANDLERS: dict[str, KindHandler] = {
    handler.kind: handler
    for handler in (account.HANDLER, network.HANDLER, cluster.HANDLER, nodegroup.HANDLER)
}


class Reconciler:
    """Drives resources toward their desired state, one pass at a time.

    Safe to call concurrently for different keys. The dispatcher guarantees
    that a single key is never reconciled by two passes at once.
    """

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        handlers: dict[str, KindHandler] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._resolver = CredentialResolver(store)
        self._handlers = HANDLERS if handlers is None else handlers

    @property
    def config(self) -> Config:
        return self._config

    def handles(self, kind: str) -> bool:
        return kind in self._handlers

    def request_teardown(self, key: ResourceKey) -> None:
        """Request deletion so the next passes run the kind's deletion steps.

        A resource loaded straight from manifests has no finalizer yet and the
        store would erase it at once, so the finalizer is added first.
        """
        handler = self._handlers.get(key.kind)
        if handler is not None:
            self._store.add_finalizer(key, handler.finalizer)
        self._store.request_deletion(key)

    def reconcile(
        self,
        key: ResourceKey,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ReconcileResult:
        """Run one reconciliation pass.

        Args:
            key: Resource to reconcile.
            cancel_event: Set by the dispatcher to abandon the pass.
            deadline: Monotonic time after which the pass is abandoned.

        Returns:
            The pass outcome; the dispatcher requeues based on it.
        """
        resource = self._store.find(key)
        if resource is None:
            logger.debug("Resource gone, nothing to reconcile", extra={"key": str(key)})
            return ReconcileResult.done()

        handler = self._handlers.get(key.kind)
        if handler is None:
            return ReconcileResult.done()

        ctx = ReconcileContext(
            resource=resource,
            store=self._store,
            config=self._config,
            resolver=self._resolver,
            region=self._region_of(resource),
            cancel_event=cancel_event or threading.Event(),
            deadline=deadline,
        )

        start = time.monotonic()
        if resource.deletion_requested:
            result = self._delete(ctx, handler)
        else:
            result = self._ensure(ctx, handler)
        self._log_result(ctx, result, time.monotonic() - start)
        return result

    def _region_of(self, resource: ManagedResource) -> str:
        spec = getattr(resource, "spec", None)
        return getattr(spec, "region", None) or self._config.default_region

    # =========================================================================
    # Ensure
    # =========================================================================

    def _ensure(self, ctx: ReconcileContext, handler: KindHandler) -> ReconcileResult:
        resource = ctx.resource

        if resource.status.status is None:
            resource.set_state(Status.PENDING, "Reconciling the resource")
            self._persist(ctx)
            return ReconcileResult.requeue_now()

        if handler.finalizer not in resource.metadata.finalizers:
            self._store.add_finalizer(resource.key, handler.finalizer)
            return ReconcileResult.requeue_now()

        blocked = self._resolve_credentials(ctx, handler)
        if blocked is not None:
            self._persist(ctx)
            return blocked

        result = run_steps(ctx, handler.ensure_steps)
        if result.error is not None:
            resource.set_state(Status.FAILURE, f"Failed to reconcile the resource: {result.error}")
        elif result.needs_requeue:
            if resource.status.status in (Status.FAILURE, Status.SUCCESS):
                resource.set_state(Status.PENDING, "Reconciling the resource")
        else:
            resource.set_state(Status.SUCCESS, "The resource has been provisioned")

        self._persist(ctx)
        return result

    def _resolve_credentials(
        self, ctx: ReconcileContext, handler: KindHandler
    ) -> ReconcileResult | None:
        """Resolve credentials into the context.

        Returns:
            None to proceed, or the result ending this pass.
        """
        resource = ctx.resource
        ref = handler.credentials_ref(resource)
        if ref is None:
            return None

        status = resource.status
        try:
            credentials = self._resolver.resolve(resource.namespace, ref)
        except PermissionDeniedError as e:
            status.set_condition(COMPONENT_CREDENTIALS, Status.FAILURE, PERMISSION_DENIED_MESSAGE, str(e))
            resource.set_state(Status.FAILURE, PERMISSION_DENIED_MESSAGE)
            return ReconcileResult.failed(e)
        except FatalConfigurationError as e:
            logger.error("Credentials cannot be resolved", extra={**ctx.log_fields, "error": str(e)})
            status.set_condition(
                COMPONENT_CREDENTIALS, Status.FAILURE, "Failed to resolve the credentials", str(e)
            )
            resource.set_state(Status.FAILURE, "Failed to resolve the credentials")
            return ReconcileResult.failed(e)

        if credentials is None:
            status.set_condition(
                COMPONENT_CREDENTIALS, Status.PENDING, "Waiting for the credentials to become available"
            )
            resource.set_state(Status.PENDING, "Waiting for the credentials")
            return ReconcileResult.requeue_in(CREDENTIALS_NOT_READY_REQUEUE_SECONDS)

        ctx.credentials = credentials
        status.set_condition(COMPONENT_CREDENTIALS, Status.SUCCESS, "Credentials resolved")
        return None

    # =========================================================================
    # Delete
    # =========================================================================

    def _delete(self, ctx: ReconcileContext, handler: KindHandler) -> ReconcileResult:
        resource = ctx.resource
        if handler.finalizer not in resource.metadata.finalizers:
            return ReconcileResult.done()

        # Teardown steps that never call the cloud must not need credentials
        ctx.credentials_loader = lambda: self._load_credentials(handler, resource)

        result = run_steps(ctx, handler.delete_steps)
        if result.error is not None:
            resource.set_state(Status.FAILURE, f"Failed to delete the resource: {result.error}")

        self._persist(ctx)
        if result.success:
            logger.info("Deletion complete, releasing finalizer", extra=ctx.log_fields)
            self._store.remove_finalizer(resource.key, handler.finalizer)
        return result

    def _load_credentials(self, handler: KindHandler, resource: ManagedResource) -> Credentials | None:
        ref = handler.credentials_ref(resource)
        if ref is None:
            return None
        return self._resolver.resolve(resource.namespace, ref)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _persist(self, ctx: ReconcileContext) -> None:
        try:
            self._store.patch_status(ctx.resource.key, ctx.resource.status)
        except NotFoundError:
            logger.debug("Resource removed during the pass", extra=ctx.log_fields)

    def _log_result(self, ctx: ReconcileContext, result: ReconcileResult, duration: float) -> None:
        extra: dict[str, Any] = {
            **ctx.log_fields,
            "state": ctx.resource.status.status.value if ctx.resource.status.status else None,
            "requeue": result.requeue,
            "requeue_after": result.requeue_after,
            "duration_seconds": round(duration, 3),
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.warning("Reconciliation failed", extra=extra)
        elif result.needs_requeue:
            logger.debug("Reconciliation requeued", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
