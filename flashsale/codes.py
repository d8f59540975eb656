"""Generation of one-time checkout codes."""

from __future__ import annotations

import base64
import secrets

_CODE_BYTES = 16


def generate_unique_code() -> str:
    """Return 16 random bytes encoded as padded URL-safe base64."""
    return base64.urlsafe_b64encode(secrets.token_bytes(_CODE_BYTES)).decode("ascii")