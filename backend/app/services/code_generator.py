from __future__ import annotations

import secrets
import string

CODE_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits


def generate(prefix: str, length: int) -> str:
    """Return `prefix` followed by `length` random characters from [A-Za-z0-9]."""
    count = max(0, int(length or 0))
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(count))
    return f"{prefix or ''}{suffix}"
