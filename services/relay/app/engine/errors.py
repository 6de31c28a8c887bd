from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures. ``message`` is safe to show to a peer."""

    message = "Relay error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class SessionNotFound(RelayError):
    message = "Session not found or expired"


class AgentAlreadyConnected(RelayError):
    message = "Session already has an agent connected"


class RateLimited(RelayError):
    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"Too many attempts. Try again in {retry_after} seconds.")


class InvalidCredential(RelayError):
    message = "Invalid agent credentials"


# Never surfaced to peers.
class MalformedMessage(RelayError):
    message = "Malformed message"


class UnauthorizedForRole(RelayError):
    message = "Not permitted for this role"
