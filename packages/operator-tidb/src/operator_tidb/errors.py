"""
Error taxonomy for reconciliation passes.

Three outcomes are possible for a pass besides success:

- Fatal: a ``ReconcileError`` subclass, or a non-404 error raised by a
  collaborator (``ApiException``, ``httpx.HTTPError``). Surfaced to the
  caller as is.
- Retryable: ``RequeueError``. The cluster is not ready for the next step
  yet; the caller requeues with a delay instead of alerting. It is
  deliberately not a ``ReconcileError`` so ``except ReconcileError`` never
  catches it by accident.
- Soft: logged and swallowed where it occurs (status projection, reclaim
  sync without volume access). No exception type.
"""

from kubernetes_asyncio.client import ApiException


class RequeueError(Exception):
    """
    Signal that the pass should be retried later.

    Attributes:
        reason: Human-readable explanation of what is being waited for.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ReconcileError(Exception):
    """Base class for fatal reconciliation errors."""


class UnsupportedKindError(ReconcileError):
    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"unsupported kind {kind}")


class StoreNotFoundError(ReconcileError):
    """A ready pod has no store entry, neither live nor tombstone."""

    def __init__(self, namespace: str, pod_name: str) -> None:
        self.namespace = namespace
        self.pod_name = pod_name
        super().__init__(f"store not found for ready pod {namespace}/{pod_name}")


class InvalidQuantityError(ReconcileError):
    def __init__(self, value: str, cause: str = "") -> None:
        self.value = value
        msg = f"invalid storage quantity {value!r}"
        if cause:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class StatusSyncError(ReconcileError):
    """The membership API could not be queried while projecting status."""


class AggregateError(ReconcileError):
    """
    Several independent failures collected during one pass.

    Attributes:
        errors: The collected exceptions, in the order they occurred.
    """

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        super().__init__(str(self))

    def __str__(self) -> str:
        return "; ".join(str(e) for e in self.errors)


def is_not_found(err: BaseException) -> bool:
    """True for a platform API error with status 404."""
    return isinstance(err, ApiException) and err.status == 404


def raise_collected(errors: list[Exception]) -> None:
    """Raise nothing, the single error as is, or an AggregateError."""
    if not errors:
        return
    if len(errors) == 1:
        raise errors[0]
    raise AggregateError(errors)
