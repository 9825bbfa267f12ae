"""
Correlation IDs for broker requests.

The ID arrives from a CI job (or is minted here), lives in a context
variable for the rest of the request, and is stamped on every log line and
on outgoing webhook payloads so a pipeline run can be traced end to end.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

correlation_id_context: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

CORRELATION_HEADERS = ("X-Correlation-ID", "X-Request-ID", "Correlation-ID", "Request-ID")


def get_correlation_id() -> Optional[str]:
    return correlation_id_context.get()


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_context.set(correlation_id)


def bind_correlation_id(headers: Mapping[str, str]) -> str:
    """Adopt the first correlation header present, or mint a new ID, and bind it to the current context."""
    for name in CORRELATION_HEADERS:
        value = headers.get(name)
        if value:
            break
    else:
        value = str(uuid.uuid4())
        logger.debug(f"Minted correlation ID {value}")

    set_correlation_id(value)
    return value
