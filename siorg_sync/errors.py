"""Error taxonomy for queue processing.

The worker classifies every failure of a queue item by the class of the
exception it raised:

* ``InfrastructureError`` - the store or the registry is unavailable. The item
  goes back to PENDING with a backoff delay until ``max_attempts`` is reached.
* ``ValidationError`` - the payload is malformed or the registry rejected the
  code. Retrying cannot help, so the item ends FAILED.
* ``ClaimLost`` - the lease was reclaimed by another worker while this one was
  still processing. The item is left alone; whoever holds it now decides.
* ``LocalRecordChanged`` - the local entity was edited between the decision and
  the write. The worker reconciles again against the fresh record.
"""


class SyncError(Exception):
    """Base class for queue processing errors."""


class InfrastructureError(SyncError):
    """A dependency is unavailable. Retryable."""


class StoreUnavailable(InfrastructureError):
    """The queue database could not be reached or the transaction failed."""


class RegistryUnavailable(InfrastructureError):
    """Network error, timeout, rate limit or 5xx from the registry."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SyncError):
    """The item can never succeed as queued. Not retryable."""


class RegistryRejected(ValidationError):
    """4xx response or unparseable body from the registry."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ClaimLost(SyncError):
    """A guarded status write matched no row: the claim is no longer ours."""


class LocalRecordChanged(SyncError):
    """The local entity changed after the decision to apply was made.

    Carries the record as it is now so the caller can reconcile again.
    """

    def __init__(self, message: str, current=None):
        super().__init__(message)
        self.current = current
