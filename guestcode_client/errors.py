"""
Exception hierarchy shared by the client services.

Each service raises its own subclass so callers can tell a transient failure
(``recoverable=True``) from one that needs a new login or user action.
"""


class GuestCodeClientError(Exception):
    """Base exception for all client-side failures."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class ApiError(GuestCodeClientError):
    """Non-2xx response or transport failure from the REST backend."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message, recoverable=recoverable)
        self.status_code = status_code
        self.response_data = response_data or {}


class AuthExpiredError(ApiError):
    """Authentication could not be restored; the caller must force a new login."""

    def __init__(self, message: str, status_code: int | None = 401, response_data: dict | None = None):
        super().__init__(
            message, status_code=status_code, response_data=response_data, recoverable=False
        )
