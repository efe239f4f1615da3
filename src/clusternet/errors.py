"""Error taxonomy for network reconciliation.

Four kinds of failure reach the caller:

- Not-found: ``azure.core.exceptions.ResourceNotFoundError`` (or a 404
  ``HttpResponseError``). Tolerated by delete steps, fatal everywhere else.
- Configuration: required upstream state is missing
  (``LoadBalancerConfigurationError``, ``UnmanagedResourceError``). Retrying
  does not help until the desired state changes.
- Capacity: the bounded NAT frontend port range is exhausted.
- Transient/provider: any other ``AzureError`` or ``TimeoutError``, passed
  through unchanged as the ``__cause__`` of the annotation wrapper.
"""

from __future__ import annotations

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError


class NetworkReconcileError(Exception):
    """Base class for errors raised by the engine itself."""

    pass


class ResourceOperationError(NetworkReconcileError):
    """A reconcile or delete step failed for a specific resource."""

    def __init__(self, operation: str, kind: str, name: str, cluster: str, cause: BaseException):
        self.operation = operation
        self.kind = kind
        self.name = name
        self.cluster = cluster
        super().__init__(f"failed to {operation} {kind} {name} for cluster {cluster}: {cause}")


class LoadBalancerConfigurationError(NetworkReconcileError):
    """Load balancer lacks state a dependent resource needs."""

    pass


class UnmanagedResourceError(NetworkReconcileError):
    """A bring-your-own resource lacks something the cluster requires."""

    pass


class NATPortExhaustedError(NetworkReconcileError):
    """No free frontend port is left for a new inbound NAT rule."""

    pass


class SkuNotFoundError(NetworkReconcileError):
    """VM size is not offered in the region."""

    pass


def is_not_found(err: BaseException | None) -> bool:
    """Check whether an error (or anything in its cause chain) is a 404."""
    while err is not None:
        if isinstance(err, ResourceNotFoundError):
            return True
        if isinstance(err, HttpResponseError) and err.status_code == 404:
            return True
        err = err.__cause__
    return False
