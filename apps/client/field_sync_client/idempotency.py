from __future__ import annotations

import uuid

IDEMPOTENCY_HEADER = "Idempotency-Key"


def idempotency_headers(local_id: str) -> dict[str, str]:
    """Headers every delivery attempt for ``local_id`` carries."""
    if not is_valid_local_id(local_id):
        raise ValueError(f"not a client-generated local id: {local_id!r}")
    return {IDEMPOTENCY_HEADER: local_id}


def is_valid_local_id(local_id: str) -> bool:
    try:
        return str(uuid.UUID(local_id)) == local_id.lower()
    except (TypeError, ValueError, AttributeError):
        return False
