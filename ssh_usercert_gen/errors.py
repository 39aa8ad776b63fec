"""Classified request failures and the HTTP status each one maps to."""

from enum import Enum


class Failure(Enum):
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    INTERNAL_ERROR = 500

    @property
    def status_code(self) -> int:
        return self.value


class RequestRejected(Exception):
    """Terminal failure of a certificate request.

    ``public_message`` is the only text that reaches the caller; ``reason``
    is for logs.
    """

    failure = Failure.INTERNAL_ERROR

    def __init__(
        self,
        reason: str,
        public_message: str = "",
        failure: Failure | None = None,
    ):
        super().__init__(reason)
        self.reason = reason
        self.public_message = public_message
        if failure is not None:
            self.failure = failure


class ValidationError(RequestRejected):
    failure = Failure.BAD_REQUEST


class MethodNotAllowedError(RequestRejected):
    failure = Failure.METHOD_NOT_ALLOWED
