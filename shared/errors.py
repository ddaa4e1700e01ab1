"""
Shared error handling for the ClawdBar access core.

Errors fall into three families:

- ClientError: the caller sent something we will not accept. Never retried.
- InfrastructureError: a collaborator (record store, chain RPC) failed.
  Retrying the request may succeed.
- FatalError: the operation must abort entirely (e.g. entropy exhaustion).
"""

from enum import Enum
from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for access core services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ClientError(AccessLayerException):
    """Errors caused by the request itself."""


class InfrastructureError(AccessLayerException):
    """Errors raised when a backing service is unavailable."""

    status_code = 503
    retryable = True


class FatalError(AccessLayerException):
    """Errors that must abort the operation entirely."""

    status_code = 500


UNAUTHORIZED_MESSAGE = "Invalid or missing API key. Include X-Agent-Key header."


class AuthenticationError(ClientError):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = UNAUTHORIZED_MESSAGE, details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class MissingCredentialError(AuthenticationError):
    """No usable credential was presented."""


class InvalidCredentialError(AuthenticationError):
    """A credential was presented but matched no principal."""


class ValidationError(ClientError):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConflictError(ClientError):
    """The request collides with an existing record."""

    status_code = 409

    def __init__(self, message: str = "Resource already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT_ERROR", message, details)


class RateLimitError(ClientError):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)


class DepositRejection(str, Enum):
    """User-facing reasons a deposit attempt is refused."""
    MALFORMED_REFERENCE = "malformed_reference"
    NOT_CONFIRMED = "not_confirmed"
    EXECUTION_FAILED = "execution_failed"
    NO_MATCHING_TRANSFER = "no_matching_transfer"
    AMOUNT_OUT_OF_BOUNDS = "amount_out_of_bounds"
    ALREADY_CLAIMED = "already_claimed"
    VERIFICATION_UNAVAILABLE = "verification_unavailable"
    WALLET_NOT_CONFIGURED = "wallet_not_configured"


class DepositRejectedError(ClientError):
    """A deposit was refused at one of the pipeline gates."""

    def __init__(self, reason: DepositRejection, message: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("DEPOSIT_REJECTED", message, {"reason": reason.value, **(details or {})})


class StoreUnavailableError(InfrastructureError):
    """The record store could not be reached."""

    def __init__(self, message: str = "Record store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class ExternalServiceError(InfrastructureError):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class ChainUnavailableError(ExternalServiceError):
    """The chain RPC endpoint timed out or returned garbage."""

    reason = DepositRejection.VERIFICATION_UNAVAILABLE

    def __init__(self, message: str = "Verification infrastructure unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("chain_rpc", message, {"reason": self.reason.value, **(details or {})})


class WalletNotConfiguredError(InfrastructureError):
    """Deposits cannot be verified because no treasury address is set."""

    reason = DepositRejection.WALLET_NOT_CONFIGURED

    def __init__(self, message: str = "Wallet system not configured. Contact administrator."):
        super().__init__("WALLET_NOT_CONFIGURED", message, {"reason": self.reason.value})


class EntropyExhaustedError(FatalError):
    """The OS randomness source failed while issuing a credential."""

    def __init__(self, message: str = "Secure random source unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("ENTROPY_EXHAUSTED", message, details)


class DuplicateRecordError(Exception):
    """A store insert violated a uniqueness constraint."""

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"duplicate key in {table}: {key}")
