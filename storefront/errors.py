from typing import Any, Dict, Optional


class StorefrontError(Exception):
    status_code = 500
    public_message: Optional[str] = None

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}

    def to_response(self) -> Dict[str, Any]:
        body = {"message": self.public_message or self.message}
        body.update(self.extra)
        return body


class ClientInputError(StorefrontError):
    status_code = 400


class AuthenticationError(StorefrontError):
    status_code = 403


class ConfigurationError(StorefrontError):
    # the real message goes to the log only
    status_code = 500
    public_message = "Server configuration error."


class ProviderError(StorefrontError):
    """The payment provider answered with a non-success status."""

    status_code = 502

    def __init__(self, message: str, *, status_code: int = 502,
                 error_code: Optional[str] = None) -> None:
        extra = {"error_code": error_code} if error_code else None
        super().__init__(message, status_code=status_code, extra=extra)
        self.error_code = error_code


class ProviderTimeout(StorefrontError):
    status_code = 504
    public_message = "Payment provider timed out. Please try again."


class ProviderUnavailable(StorefrontError):
    status_code = 502
    public_message = "Payment provider is unreachable. Please try again."


class PersistenceError(StorefrontError):
    status_code = 500
