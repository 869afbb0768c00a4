"""Error taxonomy.

- ``TransientError``: a dependency call that may succeed if retried
  (timeouts, connection errors, HTTP 429/5xx).
- ``ServiceUnavailableError``: retries exhausted or the circuit is open.
  Carries ``retry_after`` guidance in seconds.
- ``InvalidMetadataError``: required ingestion metadata is missing.
- ``QueryFailedError``: the query pipeline aborted; ``__cause__`` holds the
  proximate cause.
- ``OperationCancelled``: the caller cancelled. Deliberately *not* a
  ``DocGraphError`` so cancellation is never handled as a failure.

Not-found conditions are not exceptions; lookups return ``None``/empty.
"""

from __future__ import annotations


class DocGraphError(RuntimeError):
    pass


class TransientError(DocGraphError):
    pass


class ServiceUnavailableError(DocGraphError):
    def __init__(self, service: str, message: str, *, retry_after: float | None = None):
        self.service = service
        self.retry_after = retry_after
        hint = f" Retry after {retry_after:.0f}s." if retry_after else ""
        super().__init__(f"{service} unavailable: {message}.{hint}")


class InvalidMetadataError(DocGraphError):
    pass


class QueryFailedError(DocGraphError):
    pass


class OperationCancelled(Exception):
    pass
