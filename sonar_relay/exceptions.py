"""Relay and exchange domain exceptions."""

from typing import Optional


class RelayError(Exception):
    """Base exception for relay and exchange operations."""

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id


class MissingCredential(RelayError):
    """No API key was supplied; raised before any upstream call."""

    def __init__(self, message: str = 'Missing API key. Send it in the x-pplx-key header.', correlation_id: Optional[str] = None):
        super().__init__(message, correlation_id)


class UpstreamHTTPError(RelayError):
    """Upstream answered with a non-success status. The body is kept verbatim."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str = '',
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message, correlation_id)
        self.status_code = status_code
        self.body = body


class NetworkFailure(RelayError):
    """The request never produced an HTTP response (connect, read, or protocol error)."""

    pass


class MalformedEventLine(RelayError):
    """A data line in the event stream was not a JSON object. Recovered inside the decoder."""

    def __init__(self, message: str, line: str = ''):
        super().__init__(message)
        self.line = line


class JobFailed(RelayError):
    """An async job reached the FAILED status."""

    pass


class Cancelled(RelayError):
    """The exchange was invalidated through its cancellation token."""

    def __init__(self, message: str = 'Cancelled'):
        super().__init__(message)
