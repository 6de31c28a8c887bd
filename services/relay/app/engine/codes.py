from __future__ import annotations

import secrets
from typing import Container

# No 0/O or 1/I.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6


def allocate(live: Container[str]) -> str:
    """Draw a fresh session code that is not already in ``live``."""
    while True:
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if code not in live:
            return code
