"""
Structured application errors (HTTP status + machine readable code + message)
"""
from typing import Any, Optional


class AppError(Exception):
    """
    Error surfaced directly to the API caller.

    Raised by services and dependencies; main.py turns it into the
    normalized error envelope via backend.utils.responses.error_response.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"AppError(status_code={self.status_code}, code={self.code!r}, message={self.message!r})"


def invalid_plan_selection(message: str = "FREE cannot be subscribed explicitly") -> AppError:
    return AppError(400, "invalid_plan_selection", message)


def provider_not_ready(provider: str) -> AppError:
    return AppError(501, "provider_not_ready", f"Billing provider '{provider}' is not enabled yet")


def invalid_signature(message: str) -> AppError:
    return AppError(400, "invalid_signature", message)


def unauthenticated(message: str = "Authentication required") -> AppError:
    return AppError(401, "unauthenticated", message)


def invalid_operation(message: str) -> AppError:
    return AppError(400, "invalid_operation", message)
