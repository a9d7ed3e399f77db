from contextvars import ContextVar

from .request_context import RequestContext

# Single ContextVar for entire request context
request_context_var: ContextVar[RequestContext] = ContextVar('request_context', default=RequestContext(correlation_id='-'))


def get_correlation_id() -> str:
    """Get correlation ID from request context."""
    return request_context_var.get().correlation_id


def get_request_context() -> RequestContext:
    """Get current request context."""
    return request_context_var.get()
