from typing import Optional

from trainer_service.core.types import FailureReason


class TrainerServiceError(Exception):
    """Base for all errors raised by trainer_service."""


class ParseFailure(TrainerServiceError):
    """Malformed directive text. Logged and skipped, never surfaced."""


class UnknownDirective(TrainerServiceError):
    def __init__(self, name: str):
        super().__init__(f"Unknown directive: {name}")
        self.name = name


class ExecutorFailure(TrainerServiceError):
    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name


class TransportError(TrainerServiceError):
    reason: FailureReason = FailureReason.UNKNOWN

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.reason.user_message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.reason.retryable


class TransportNetworkError(TransportError):
    reason = FailureReason.NETWORK


class TransportTimeoutError(TransportError):
    reason = FailureReason.TIMEOUT


class TransportServerError(TransportError):
    reason = FailureReason.SERVER


class TransportRateLimitError(TransportError):
    reason = FailureReason.RATE_LIMIT

    def __init__(self, message: str = "", status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransportAuthError(TransportError):
    reason = FailureReason.AUTHENTICATION


class TransportUnknownError(TransportError):
    reason = FailureReason.UNKNOWN


class OfflineError(TrainerServiceError):
    """No connectivity at send time; the message was queued."""

    def __init__(self, message_id: str):
        super().__init__(f"Offline, message {message_id} queued")
        self.message_id = message_id


class MaxAttemptsExceeded(TrainerServiceError):
    def __init__(self, message_id: str, attempts: int, last_error: str):
        super().__init__(f"Message {message_id} failed after {attempts} attempts: {last_error}")
        self.message_id = message_id
        self.attempts = attempts
        self.last_error = last_error


class DeliveryFailed(TrainerServiceError):
    """Terminal delivery failure. `retryable` tells whether a manual retry is offered."""

    def __init__(self, message_id: str, reason: FailureReason, retryable: bool, cause: Optional[BaseException] = None):
        super().__init__(f"Delivery of {message_id} failed: {reason.user_message}")
        self.message_id = message_id
        self.reason = reason
        self.retryable = retryable
        self.cause = cause
