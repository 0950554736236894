"""Exception taxonomy for the coordination primitives.

Contention is never an exception: a lock that is already held, a denied
rate-limit check and an empty claim are ordinary return values. Exceptions
are reserved for:

- store failures (``StoreError`` and subclasses), surfaced without retries
- programmer errors (``InvalidArgumentError``), raised before any round trip
- the opt-in blocking lock helpers (``LockNotAcquiredError``)
"""

from __future__ import annotations


class ConcordError(Exception):
    """Base class for all errors raised by this package."""


class StoreError(ConcordError):
    """The backing store failed to run a command or script."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class TransientStoreError(StoreError):
    """Store failure that may succeed on retry (timeout, connection loss).

    Callers decide whether and how to retry; nothing in this package retries
    on their behalf.
    """


class StoreTimeoutError(TransientStoreError):
    """The store did not answer within the socket timeout."""


class StoreUnavailableError(TransientStoreError):
    """The connection to the store could not be established or was reset."""


class ScriptError(StoreError):
    """The store rejected a script or command."""


class InvalidArgumentError(ConcordError, ValueError):
    """Invalid input detected before contacting the store."""


class StreamNotFoundError(ConcordError):
    """A consumer group was requested on a stream that does not exist."""

    def __init__(self, stream: str):
        self.stream = stream
        super().__init__(
            f"Stream '{stream}' does not exist; pass mkstream=True to create it"
        )


class LockNotAcquiredError(ConcordError):
    """A blocking acquisition gave up before the lock became free."""

    def __init__(self, resource: str, waited: float):
        self.resource = resource
        self.waited = waited
        super().__init__(f"Could not acquire lock '{resource}' within {waited:.2f}s")
