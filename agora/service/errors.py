from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Domain failure raised by the services and rendered as an error envelope.

    ``status_code`` is the HTTP status and ``error_code`` the stable string
    clients switch on. Subclasses fix both; ``detail`` travels to the
    envelope's ``details`` field unchanged.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"


class ValidationError(ServiceError):
    pass


class AuthenticationError(ServiceError):
    """Bad credentials, or a token/session that is invalid, revoked or expired."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class CodeCooldownError(ConflictError):
    """A one-time code was tried again before its retry window elapsed."""

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "Please wait 1 minute before requesting again",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """A setting the operation needs (for example ``JWT_SECRET``) is unset."""

    error_code = "configuration_error"
