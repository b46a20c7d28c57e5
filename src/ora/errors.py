"""Error taxonomy shared by the calendar, friends and consent code.

Every error carries a stable machine-readable ``code`` which the API layer
maps onto HTTP statuses.  ``ALREADY_*`` outcomes of a friend request are
result values, not errors, and live in :mod:`ora.friends.models`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ora.calendar.models import CalendarEvent

SESSION_EXPIRED_MESSAGE = "Google Calendar session expired. Please reconnect."


class OraError(RuntimeError):
    """Base class for all ORA domain errors."""

    code = "ORA_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class AuthRequiredError(OraError):
    """Raised when an operation needs an authenticated user and none is present."""

    code = "AUTH_REQUIRED"


class SessionExpiredError(OraError):
    """Raised after the provider rejected the access token with a 401."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = SESSION_EXPIRED_MESSAGE) -> None:
        super().__init__(message)


class ProviderError(OraError):
    """Raised when the calendar provider answers with a non-2xx status.

    ``status_code`` is ``None`` when the request never produced a response
    (connection failure, timeout, unparseable payload).
    """

    code = "PROVIDER_ERROR"

    def __init__(self, *, status_code: int | None, message: str, body: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        if status_code is None:
            text = f"Google Calendar request failed: {message}"
        else:
            text = f"Google Calendar API request failed ({status_code}): {message}"
        super().__init__(text, details={"status_code": status_code})


class TokenExchangeError(OraError):
    """Raised when the provider token endpoint rejects a refresh or code exchange.

    ``error_code`` is the provider's ``error`` field (e.g. ``invalid_grant``)
    when one was returned.
    """

    code = "TOKEN_EXCHANGE_FAILED"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        self.error_code = error_code
        super().__init__(message, details={"error_code": error_code} if error_code else None)


class ConflictDetectedError(OraError):
    """Raised by ``create_event`` when the candidate overlaps existing events."""

    code = "CONFLICT_DETECTED"

    def __init__(self, conflicts: list[CalendarEvent]) -> None:
        self.conflicts = conflicts
        super().__init__(
            f"Candidate event overlaps {len(conflicts)} existing event(s)",
            details={"conflicts": [event.event_id for event in conflicts]},
        )


class StateInvalidError(OraError):
    """Raised when a signed OAuth state token is malformed, tampered or expired."""

    code = "STATE_INVALID"


class FriendshipNotFoundError(OraError):
    code = "FRIENDSHIP_NOT_FOUND"

    def __init__(self, message: str = "Friendship not found.") -> None:
        super().__init__(message)


class SelfRequestError(OraError):
    code = "SELF_REQUEST"

    def __init__(self, message: str = "You cannot add yourself as a friend.") -> None:
        super().__init__(message)


class InvalidTransitionError(OraError):
    """Raised when a friend request is moved out of a state that does not allow it."""

    code = "INVALID_TRANSITION"


class StoragePermissionDeniedError(OraError):
    """Raised by a document store when the caller may not read a document."""

    code = "STORAGE_PERMISSION_DENIED"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Permission denied reading {path}", details={"path": path})


class DocumentNotFoundError(OraError):
    """Raised by ``update`` when the target document does not exist."""

    code = "NOT_FOUND"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Document not found: {path}", details={"path": path})


class NoClientConfigError(OraError):
    code = "NO_CLIENT_CONFIG"

    def __init__(self, message: str = "Missing Google OAuth client configuration.") -> None:
        super().__init__(message)


class UserCancelledError(OraError):
    """Raised when the user dismissed an interactive consent prompt."""

    code = "USER_CANCELLED"


class ConsentFailedError(OraError):
    """Raised when a consent callback cannot complete after the code exchange."""

    code = "CONSENT_FAILED"
