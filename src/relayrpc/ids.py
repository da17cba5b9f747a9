"""Id generation for correlation ids, payload roots and listener handles."""

from __future__ import annotations

import uuid


def generate_id() -> str:
    """Return a fresh random (v4) UUID string."""
    return str(uuid.uuid4())
