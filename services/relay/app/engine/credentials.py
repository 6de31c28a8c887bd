from __future__ import annotations

import hmac
from typing import Any


class CredentialValidator:
    """Checks a presented secret against the configured one.

    ``hmac.compare_digest`` runs in time independent of where the inputs
    first differ; it may return early on a length mismatch, which only
    reveals the secret's length.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8") if secret else b""

    def validate(self, provided: Any) -> bool:
        if not self._secret or not provided or not isinstance(provided, str):
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self._secret)


def check_operator_login(
    username: Any, password: Any, *, expected_username: str, expected_password: str
) -> bool:
    # Evaluate both so a wrong username costs the same as a wrong password.
    user_ok = CredentialValidator(expected_username).validate(username)
    pass_ok = CredentialValidator(expected_password).validate(password)
    return user_ok and pass_ok
