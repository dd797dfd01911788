"""Request correlation ids."""

from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

from fastapi import Request

CORRELATION_ID_HEADER = "x-correlation-id"

_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]+$")
_MAX_LENGTH = 128

correlation_id_var: ContextVar[str | None] = ContextVar(
    "carrierlink_correlation_id", default=None
)


def normalize_correlation_id(value: str | None) -> str:
    """Return ``value`` when it is a safe id, otherwise a fresh uuid4."""
    candidate = (value or "").strip()
    if (
        candidate
        and len(candidate) <= _MAX_LENGTH
        and _VALID_CORRELATION_ID.match(candidate)
    ):
        return candidate
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def resolve_correlation_id(request: Request) -> str:
    """FastAPI dependency binding the request's correlation id."""
    correlation_id = normalize_correlation_id(
        request.headers.get(CORRELATION_ID_HEADER)
    )
    correlation_id_var.set(correlation_id)
    return correlation_id
