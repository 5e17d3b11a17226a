from typing import Optional


class PayflowError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(PayflowError):
    """Malformed or inconsistent request data. Raised before any external call."""

    status_code = 422


class SignatureError(ValidationError):
    status_code = 400


class NotFoundError(PayflowError):
    status_code = 404


class ConflictError(PayflowError):
    status_code = 409


class ConfigurationError(PayflowError):
    """A required secret or environment value is missing."""

    status_code = 500


class AuthorizationError(PayflowError):
    status_code = 401


class ForbiddenError(AuthorizationError):
    status_code = 403


class ProviderError(PayflowError):
    """An external payment or email API answered with a non-2xx or garbage."""

    def __init__(self, provider: str, raw: str, status_code: Optional[int] = None):
        super().__init__(f"{provider} error: {raw}")
        self.provider = provider
        self.raw = raw
        self.upstream_status = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "provider": self.provider}
