"""ULID generation helper utilities."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def short_token(length: int = 8) -> str:
    """Return the random tail of a fresh ULID, used for human-facing reference numbers."""
    return generate_ulid()[-length:]
