"""Request correlation IDs.

Every webhook delivery gets an X-Request-ID. structlog reads it from the
asgi-correlation-id context var, so all log lines of one delivery share it.
"""

import re
import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def is_valid_request_id(value: str) -> bool:
    """Caller-supplied ids end up in every log line; keep them short and plain."""
    return bool(_REQUEST_ID_RE.match(value))


def setup_correlation_middleware(app: FastAPI) -> None:
    """Echo a valid caller X-Request-ID, otherwise generate a UUID."""
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=is_valid_request_id,
    )


def get_correlation_id() -> str | None:
    """Current request's correlation ID, None outside a request."""
    try:
        return correlation_id.get()
    except LookupError:
        return None


__all__ = ["setup_correlation_middleware", "get_correlation_id", "is_valid_request_id"]
