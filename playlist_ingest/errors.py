"""Error taxonomy shared by the fetcher, parsers, store and orchestrator."""
from __future__ import annotations


class IngestError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class TransportError(IngestError):
    """A request could not be completed."""

    retryable = True


class FetchTimeout(TransportError):
    pass


class NetworkUnreachable(TransportError):
    pass


class HttpStatusError(TransportError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "", message: str | None = None):
        self.status_code = status_code
        self.body = body
        self.retryable = not 400 <= status_code < 500
        super().__init__(message or f"Server returned {status_code}: {body or 'Unknown error'}")


class RetriesExhausted(TransportError):
    """Every attempt failed with a transient error."""

    def __init__(self, last_error: Exception, attempts: int = 0):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(str(last_error) or "Failed to fetch data after multiple attempts")


class AuthError(IngestError):
    pass


class ParseError(IngestError):
    pass


class PersistenceError(IngestError):
    pass


class ValidationError(IngestError):
    pass


class IngestionInProgress(IngestError):
    pass


class IngestionCancelled(IngestError):
    pass


def root_cause(error: Exception) -> Exception:
    """Unwrap ``RetriesExhausted`` down to the last underlying error."""
    while isinstance(error, RetriesExhausted):
        error = error.last_error
    return error
