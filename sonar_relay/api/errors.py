"""Error bodies returned by the relay endpoints."""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import ORJSONResponse

from sonar_relay.common.vars import get_correlation_id
from sonar_relay.config.log import get_logger
from sonar_relay.exceptions import MissingCredential, RelayError, UpstreamHTTPError

logger = get_logger(__name__)

SERVER_PROXY_ERROR = 'Server proxy error.'


def error_response(message: str, status_code: int) -> ORJSONResponse:
    return ORJSONResponse({'error': message}, status_code=status_code)


def status_for_error(exc: RelayError) -> int:
    """Map a domain error onto the HTTP status the relay answers with."""
    if isinstance(exc, MissingCredential):
        return 400
    if isinstance(exc, UpstreamHTTPError):
        return exc.status_code
    return 500


async def relay_error_handler(request: Request, exc: RelayError) -> ORJSONResponse:
    if exc.correlation_id is None:
        exc.correlation_id = get_correlation_id()
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error('Relay error', path=request.url.path, error=exc.message, error_type=exc.__class__.__name__, correlation_id=exc.correlation_id)
        return error_response(SERVER_PROXY_ERROR, status_code)
    logger.info('Rejected relay request', path=request.url.path, status_code=status_code, error=exc.message, correlation_id=exc.correlation_id)
    return error_response(exc.message, status_code)


__all__ = ['SERVER_PROXY_ERROR', 'error_response', 'relay_error_handler', 'status_for_error']
