from typing import Any, Optional


class ChatError(Exception):
    """Base class for chat engine failures.

    `kind` is a stable snake_case identifier used in logs, metrics labels
    and HTTP error bodies.
    """

    kind: str = "chat_error"


class ValidationError(ChatError):
    """Bad caller input. Never retried automatically."""

    kind = "validation_error"


class InvalidStateError(ChatError):
    """Operation not valid in the current lifecycle state."""

    kind = "invalid_state"

    def __init__(self, operation: str, state: Any):
        self.operation = operation
        self.state = state
        super().__init__(f"{operation} is not allowed in state {getattr(state, 'value', state)}")


class PersistenceError(ChatError):
    """A record store operation failed."""

    kind = "persistence_error"


class SessionNotFound(PersistenceError):
    kind = "session_not_found"

    def __init__(self, session_id: Any):
        self.session_id = session_id
        super().__init__(f"session {session_id} not found")


class SubscriptionError(ChatError):
    """Change feed registration failed; the session is usable in poll-only mode."""

    kind = "subscription_error"

    def __init__(self, message: str, session: Optional[Any] = None):
        super().__init__(message)
        self.session = session


# -----------------------------
# Completion client failures
# -----------------------------

class CompletionError(ChatError):
    """A classified failure of the completion API. Surfaced verbatim, no retry."""

    kind = "completion_error"


class MissingCredential(CompletionError):
    kind = "missing_credential"

    def __init__(self, message: str = "No API key configured for the completion provider"):
        super().__init__(message)


class Unauthorized(CompletionError):
    kind = "unauthorized"

    def __init__(self, message: str = "Completion API rejected the credentials (401)"):
        super().__init__(message)


class QuotaExceeded(CompletionError):
    """429 from the completion API. Caller should back off; this client does not retry."""

    kind = "quota_exceeded"

    def __init__(self, message: str = "Completion API rate limit exceeded (429)", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(CompletionError):
    kind = "server_error"

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Completion API error {status_code}: {body[:256]!r}")


class TransportError(CompletionError):
    kind = "transport_error"


class MalformedResponse(CompletionError):
    kind = "malformed_response"
