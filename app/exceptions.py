"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from decimal import Decimal
from uuid import UUID


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class InvalidInputError(ServiceError):
    """Raised when the caller must correct the request before retrying."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Raised when no valid API token or session identifies the caller."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(ServiceError):
    """Raised when the caller is authenticated but lacks a required role."""

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: {required_role} role required")


class InsufficientFundsError(ServiceError):
    """Raised at admission when the balance does not cover the cost."""

    def __init__(self, balance: Decimal, required: Decimal) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient balance. You need ${required:.2f} but only have "
            f"${balance:.2f}. Please top up your account."
        )


class UpstreamSubmitError(ServiceError):
    """Raised when the job platform rejects or cannot receive a submission."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UpstreamPollError(ServiceError):
    """Raised when the job platform cannot be polled on the final attempt."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(ServiceError):
    """Raised when a required database write fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Persistence error: {message}")


class JobPlatformNotConfiguredError(ServiceError):
    """Raised when a generation is requested without job platform settings."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(
            f"{setting} is not configured. Please set {setting} in environment variables."
        )


class ResourceNotFoundError(ServiceError):
    """Raised when an owner-scoped resource does not exist."""

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")
