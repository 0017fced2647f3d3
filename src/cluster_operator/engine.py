"""Ensure-pipeline primitives.

A pipeline is an ordered list of ``Step`` objects. Each step checks then
acts on one piece of cloud or store state and answers with a
``ReconcileResult``: done, requeue (now or later), or error. ``run_steps``
executes them strictly in order and stops at the first result that is not
plain "done".
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .aws.clients import AWSClients
from .config import TRANSIENT_REQUEUE_SECONDS, Config
from .credentials import Credentials, CredentialResolver, qualified
from .errors import NotReadyError, PassCancelledError, classify
from .models import ManagedResource, Ownership, Status
from .store import ResourceStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a step, a pipeline, or a whole reconciliation pass."""

    requeue: bool = False
    requeue_after: float = 0.0
    error: BaseException | None = None

    @property
    def needs_requeue(self) -> bool:
        return self.requeue or self.requeue_after > 0

    @property
    def success(self) -> bool:
        """Check if the pass finished with nothing left to do."""
        return self.error is None and not self.needs_requeue

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls()

    @classmethod
    def requeue_now(cls) -> ReconcileResult:
        return cls(requeue=True)

    @classmethod
    def requeue_in(cls, seconds: float) -> ReconcileResult:
        return cls(requeue_after=seconds)

    @classmethod
    def failed(cls, error: BaseException) -> ReconcileResult:
        return cls(error=error)


@dataclass
class ReconcileContext:
    """Everything a step may touch during one pass.

    Nothing here outlives the pass: credentials and cloud clients are built
    for this pass only.
    """

    resource: ManagedResource
    store: ResourceStore
    config: Config
    resolver: CredentialResolver
    region: str
    credentials: Credentials | None = None
    credentials_loader: Callable[[], Credentials | None] | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: float | None = None
    current_component: str | None = None
    touched: set[str] = field(default_factory=set)
    _clients: AWSClients | None = None

    @property
    def log_fields(self) -> dict[str, Any]:
        return {
            "kind": self.resource.kind,
            "namespace": self.resource.namespace,
            "resource": self.resource.name,
        }

    def aws(self) -> AWSClients:
        """Return cloud clients, resolving credentials on first use if needed.

        Raises:
            NotReadyError: If the credentials are not ready yet.
        """
        if self._clients is None:
            if self.credentials is None and self.credentials_loader is not None:
                self.credentials = self.credentials_loader()
            if self.credentials is None:
                raise NotReadyError("cloud credentials are not ready")
            self._clients = AWSClients(self.credentials, self.region)
        return self._clients

    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check_cancelled(self) -> None:
        """Raise if the dispatcher cancelled this pass or its deadline passed."""
        if self.cancel_event.is_set():
            raise PassCancelledError("reconciliation pass cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise PassCancelledError("reconciliation pass exceeded its deadline")

    def component_status(self) -> Status | None:
        """Prior status of the component owned by the running step."""
        if self.current_component is None:
            return None
        return self.resource.status.condition_status(self.current_component)

    def set_component(self, status: Status, message: str = "", detail: str = "") -> None:
        """Write the component owned by the running step."""
        if self.current_component is None:
            return
        self.resource.status.set_condition(self.current_component, status, message, detail)
        self.touched.add(self.current_component)


StepFunc = Callable[[ReconcileContext], ReconcileResult]


@dataclass(frozen=True)
class Step:
    """A named ensure-step and the component it owns."""

    name: str
    func: StepFunc
    component: str | None = None


@dataclass(frozen=True)
class KindHandler:
    """How one resource kind is reconciled."""

    kind: str
    finalizer: str
    ensure_steps: tuple[Step, ...]
    delete_steps: tuple[Step, ...]
    credentials_ref: Callable[[ManagedResource], Ownership | None] = lambda _: None


def refers_to(ref: Ownership | None, resource: ManagedResource) -> bool:
    """Check if a reference points at a resource, filling in an omitted group."""
    return ref is not None and qualified(ref).matches(resource.ownership())


def mark_deleting(ctx: ReconcileContext) -> ReconcileResult:
    """Show Deleting before any teardown call is made."""
    if ctx.resource.status.status == Status.DELETING:
        return ReconcileResult.done()
    ctx.resource.set_state(Status.DELETING, "Deleting the resource")
    return ReconcileResult.requeue_now()


MARK_DELETING = Step("mark-deleting", mark_deleting)


def _result_from_exception(ctx: ReconcileContext, step: Step, err: Exception) -> ReconcileResult:
    kind = classify(err)
    extra = {**ctx.log_fields, "step": step.name, "error": str(err), "error_type": type(err).__name__}

    if kind == "transient":
        retry_after = getattr(err, "retry_after", None) or TRANSIENT_REQUEUE_SECONDS
        logger.warning("Transient error, requeueing", extra={**extra, "retry_after": retry_after})
        ctx.set_component(Status.PENDING, "Waiting on a transient condition", str(err))
        return ReconcileResult.requeue_in(retry_after)

    if kind == "fatal":
        logger.error("Step failed", extra=extra)
    else:
        logger.exception("Step failed with an unclassified error", extra=extra)
    return ReconcileResult.failed(err)


def run_steps(ctx: ReconcileContext, steps: tuple[Step, ...] | list[Step]) -> ReconcileResult:
    """Execute steps in order, stopping at the first non-trivial result.

    The returned result is the stopping step's result, or done when every
    step completed.
    """
    for step in steps:
        ctx.current_component = step.component
        try:
            ctx.check_cancelled()
            result = step.func(ctx)
        except Exception as e:
            result = _result_from_exception(ctx, step, e)

        if result.error is not None:
            ctx.set_component(Status.FAILURE, f"Failed in {step.name}", str(result.error))
            return result

        if result.needs_requeue:
            if step.component is not None and step.component not in ctx.touched:
                ctx.set_component(Status.PENDING)
            logger.debug(
                "Step requested requeue",
                extra={**ctx.log_fields, "step": step.name, "requeue_after": result.requeue_after},
            )
            return result

        if step.component is not None:
            prior = ctx.resource.status.get_condition(step.component)
            kept = prior is not None and step.component in ctx.touched
            if not (kept and prior.status == Status.SUCCESS):
                ctx.set_component(Status.SUCCESS)

    ctx.current_component = None
    return ReconcileResult.done()
