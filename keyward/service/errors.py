from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, Optional, TypeVar

from keyward.logging import get_logger
from keyward.storage.models import ChannelType

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class ServiceError(Exception):
    """Base class for service-layer failures a transport maps to a response.

    Each subclass pins an HTTP-style ``status_code`` and a stable
    ``error_code``; ``detail`` carries machine-readable context.
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
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidCredentialsError(ServiceError):
    """Login or password check failed (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(ServiceError):
    """Access token missing, malformed, forged or expired (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(ServiceError):
    status_code = 404
    error_code = "user_not_found"

    def __init__(self, message: str = "user not found", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AlreadyDeletedError(ServiceError):
    status_code = 410
    error_code = "already_deleted"

    def __init__(self, message: str = "user already deleted", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AlreadyExistsError(ServiceError):
    """A unique attribute collided with an existing record (409)."""
    status_code = 409
    error_code = "already_exists"
    field: Optional[str] = None

    def __init__(self, message: Optional[str] = None, **kwargs: Any) -> None:
        if message is None:
            message = f"{self.field} already exists" if self.field else "already exists"
        kwargs.setdefault("detail", {"field": self.field} if self.field else {})
        super().__init__(message, **kwargs)


class UsernameAlreadyExistsError(AlreadyExistsError):
    error_code = "username_already_exists"
    field = "username"


class EmailAlreadyExistsError(AlreadyExistsError):
    error_code = "email_already_exists"
    field = "email"


class PhoneAlreadyExistsError(AlreadyExistsError):
    error_code = "phone_already_exists"
    field = "phone"


_FIELD_CONFLICTS = {
    "username": UsernameAlreadyExistsError,
    "email": EmailAlreadyExistsError,
    "phone": PhoneAlreadyExistsError,
}


def already_exists_for(field: Optional[str]) -> AlreadyExistsError:
    """Pick the field-scoped conflict error for a storage constraint field."""
    cls = _FIELD_CONFLICTS.get(field or "")
    return cls() if cls else AlreadyExistsError()


class VerificationCodeNotValidError(ServiceError):
    status_code = 400
    error_code = "verification_code_not_valid"

    def __init__(self, channel: Optional[ChannelType] = None, **kwargs: Any) -> None:
        self.channel = channel
        label = channel.value if channel else "verification"
        kwargs.setdefault("detail", {"channel": channel.value} if channel else {})
        super().__init__(f"{label} code not valid", **kwargs)


_NOT_VERIFIED_KEYS = {
    ChannelType.EMAIL: "EMAIL_NOT_VERIFIED",
    ChannelType.PHONE: "PHONE_NOT_VERIFIED",
}


class ChannelNotVerifiedError(ServiceError):
    """The contact channel is unproven; ``None`` means neither channel is."""
    status_code = 403
    error_code = "channel_not_verified"

    def __init__(self, channel: Optional[ChannelType] = None, **kwargs: Any) -> None:
        self.channel = channel
        channels = [channel] if channel else [ChannelType.EMAIL, ChannelType.PHONE]
        kwargs.setdefault("detail", {_NOT_VERIFIED_KEYS[c]: True for c in channels})
        super().__init__(
            f"{' and '.join(c.value for c in channels)} not verified", **kwargs
        )


class ChannelNotProvidedError(ServiceError):
    status_code = 400
    error_code = "channel_not_provided"

    def __init__(self, channel: Optional[ChannelType] = None, **kwargs: Any) -> None:
        self.channel = channel
        label = channel.value if channel else "email or phone"
        kwargs.setdefault("detail", {"channel": channel.value} if channel else {})
        super().__init__(f"{label} not provided", **kwargs)


class AdminAlreadyExistsError(ServiceError):
    status_code = 409
    error_code = "admin_already_exists"

    def __init__(self, message: str = "admin grant already exists", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AdminNotMajorError(ServiceError):
    status_code = 403
    error_code = "admin_not_major"

    def __init__(self, message: str = "major admin required", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class CannotDeleteMajorAdminError(ServiceError):
    status_code = 403
    error_code = "cannot_delete_major_admin"

    def __init__(self, message: str = "major admin cannot be revoked", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenNotValidError(ServiceError):
    status_code = 401
    error_code = "refresh_token_not_valid"

    def __init__(self, message: str = "refresh token not valid", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ValidationFailedError(ServiceError):
    """Input rejected field by field; ``detail["errors"]`` maps field to reason."""
    status_code = 400
    error_code = "validation_failed"

    def __init__(self, errors: dict, message: str = "validation failed", **kwargs: Any) -> None:
        self.errors = dict(errors)
        kwargs.setdefault("detail", {"errors": self.errors})
        super().__init__(message, **kwargs)


class InternalError(ServiceError):
    """Unexpected store or dependency failure (500)."""
    status_code = 500
    error_code = "internal"

    def __init__(self, message: str = "internal error", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


def translate_internal_errors(event: str) -> Callable[[F], F]:
    """Log unexpected exceptions under ``event`` and re-raise them as InternalError.

    ServiceError subclasses pass through untouched. Works on plain and
    coroutine functions.
    """

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await func(*args, **kwargs)
                except ServiceError:
                    raise
                except Exception as exc:
                    logger.error(event, error_type=type(exc).__name__, error=str(exc))
                    raise InternalError() from exc

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ServiceError:
                raise
            except Exception as exc:
                logger.error(event, error_type=type(exc).__name__, error=str(exc))
                raise InternalError() from exc

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = [
    "ServiceError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "UserNotFoundError",
    "AlreadyDeletedError",
    "AlreadyExistsError",
    "UsernameAlreadyExistsError",
    "EmailAlreadyExistsError",
    "PhoneAlreadyExistsError",
    "already_exists_for",
    "VerificationCodeNotValidError",
    "ChannelNotVerifiedError",
    "ChannelNotProvidedError",
    "AdminAlreadyExistsError",
    "AdminNotMajorError",
    "CannotDeleteMajorAdminError",
    "RefreshTokenNotValidError",
    "ValidationFailedError",
    "InternalError",
    "translate_internal_errors",
]
