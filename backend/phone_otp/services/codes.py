from __future__ import annotations

import secrets
import string

MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 6


def generate_code(length: int = 4) -> str:
    """Return a numeric code with each digit drawn independently from the OS CSPRNG."""
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(f"Code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
    alphabet = string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))
