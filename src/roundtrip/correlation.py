from __future__ import annotations

import uuid

CORRELATION_ID_PROPERTY = "correlationId"


def new_correlation_id() -> str:
    """Return a fresh correlation id (random UUID4 rendered as text)."""
    return str(uuid.uuid4())
