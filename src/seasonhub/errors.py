"""Domain error taxonomy.

Services raise these; ``middleware.error_handler`` renders them as JSON
with the matching status code.
"""

from __future__ import annotations


class SeasonHubError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(SeasonHubError):
    """Account or session absent."""

    status_code = 404
    code = "not_found"


class ConflictError(SeasonHubError):
    """Display name taken or provider already linked elsewhere."""

    status_code = 409
    code = "conflict"


class UnauthorizedError(SeasonHubError):
    """Identity provider rejected the credential, or a bad signature in enforce mode."""

    status_code = 401
    code = "unauthorized"


class ValidationError(SeasonHubError):
    """Malformed input or missing confirmation token."""

    status_code = 422
    code = "validation"


class UnavailableError(SeasonHubError):
    """Backing store or identity provider unreachable."""

    status_code = 503
    code = "unavailable"

