from __future__ import annotations

"""Error taxonomy shared by the provider adapters, the orchestrator and the API."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    SERVER = "server"


class GenerationError(Exception):
    kind: ErrorKind = ErrorKind.SERVER
    default_message = "Something went wrong while generating. Please try again."

    def __init__(self, message: str = "", *, status_code: Optional[int] = None) -> None:
        super().__init__(message or self.default_message)
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        return self.default_message


class NetworkError(GenerationError):
    kind = ErrorKind.NETWORK
    default_message = "Network problem while generating. Please try again."


class UnauthorizedError(GenerationError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Please sign in again to continue."


class RateLimitError(GenerationError):
    kind = ErrorKind.RATE_LIMIT
    default_message = "Daily generation limit reached. Try again later."


class ValidationError(GenerationError):
    kind = ErrorKind.VALIDATION
    default_message = "Please check your input and try again."


class ServerError(GenerationError):
    kind = ErrorKind.SERVER


def error_for_status(status_code: int, detail: Optional[str] = None) -> GenerationError:
    """Map a non-success HTTP status from a generation endpoint to an error."""

    if status_code == 401:
        return UnauthorizedError(detail or "Unauthorized", status_code=status_code)
    if status_code == 429:
        return RateLimitError(detail or "Too many requests", status_code=status_code)
    if status_code == 400:
        return ValidationError(detail or "Invalid request", status_code=status_code)
    if status_code == 408:
        return NetworkError(detail or "Request timed out", status_code=status_code)
    return ServerError(detail or f"Generation failed with status {status_code}", status_code=status_code)
