import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class RequestContext:
    """Per-request metadata used by structured logging."""

    # Request identification
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    upstream_request_id: Optional[str] = None  # x-request-id returned by upstream

    # Relay metadata
    endpoint: Optional[str] = None  # chat, async_submit, async_get
    job_id: Optional[str] = None
    upstream_status: Optional[int] = None

    # Request metadata
    path: Optional[str] = None
    method: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_none: bool = False) -> dict:
        """Convert to dictionary for structured logging."""
        result = {}
        for key, value in {
            'correlation_id': self.correlation_id,
            'upstream_request_id': self.upstream_request_id,
            'endpoint': self.endpoint,
            'job_id': self.job_id,
            'upstream_status': self.upstream_status,
            'path': self.path,
            'method': self.method,
        }.items():
            if include_none or value is not None:
                result[key] = value

        result.update(self.extra)
        return result

    def update_upstream_info(self, status_code: int, request_id: Optional[str] = None) -> None:
        self.upstream_status = status_code
        if request_id:
            self.upstream_request_id = request_id
