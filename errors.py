"""
Error taxonomy shared by the services. Each error knows the HTTP status it
maps to; `main.py` renders them with the standard error envelope.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error = error


class ValidationError(AppError):
    status_code = 400


class ConflictError(AppError):
    status_code = 400


class AuthorizationError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class OtpExpiredError(ValidationError):
    pass


class OtpLockedError(ValidationError):
    pass


class InvalidOtpError(AuthorizationError):
    def __init__(self, remaining_attempts: int):
        super().__init__(f"Invalid OTP. {remaining_attempts} attempts remaining.")
        self.remaining_attempts = remaining_attempts


class DownstreamError(AppError):
    """A notification channel (mail, WhatsApp) failed. Callers log and move on."""
    status_code = 502
