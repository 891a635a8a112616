"""
Custom exception hierarchy for Platform Bridge.

Exceptions are categorized as:
- RetryableError: Transient errors that should trigger Celery retry
- NonRetryableError: Permanent errors that should fail immediately

This categorization allows Celery tasks to use:
- autoretry_for=(RetryableError,)
- dont_autoretry_for=(NonRetryableError,)

Every exception carries a stable ``kind`` so callers and HTTP handlers
can branch on the error class without string matching.
"""
from typing import Any, Optional


class PlatformBridgeError(Exception):
    """Base exception for Platform Bridge."""

    kind = "platform_bridge_error"

    def __init__(self, message: str = "", platform: Optional[str] = None):
        self.platform = platform
        self.message = message
        super().__init__(message)


# ============================================
# RETRYABLE ERRORS - Will trigger Celery retry
# ============================================
class RetryableError(PlatformBridgeError):
    """
    Base class for errors that should trigger retry.

    Use this for transient errors where retrying might succeed:
    - Network timeouts
    - Rate limits that survived the single in-band retry
    - Temporary storage unavailability
    """
    kind = "retryable_error"


class NetworkError(RetryableError):
    """Timeout or connection failure talking to a platform."""
    kind = "network_error"


class RateLimitError(RetryableError):
    """
    Rate limit still exceeded after the single delayed retry.

    Higher-level jobs decide whether to back off further or abort.
    """
    kind = "rate_limit_error"

    def __init__(self, platform: str, retry_after: float = 60):
        self.retry_after = retry_after
        super().__init__(f"{platform} rate limited. Retry after {retry_after}s", platform=platform)


class StorageError(RetryableError):
    """
    Transient database error.

    Examples: connection pool exhausted, temporary unavailability
    """
    kind = "storage_error"


# ============================================
# NON-RETRYABLE ERRORS - No automatic retry
# ============================================
class NonRetryableError(PlatformBridgeError):
    """
    Base class for errors that should NOT trigger retry.

    Use this for permanent errors where retrying won't help:
    - Validation failures
    - Missing or revoked credentials
    - Operations the platform does not offer
    """
    kind = "non_retryable_error"


class AuthenticationError(NonRetryableError):
    """Missing, expired or invalid platform credential."""
    kind = "authentication_error"


class UnsupportedOperationError(NonRetryableError):
    """The platform has no API for this operation (declared capability gap)."""
    kind = "unsupported_operation"

    def __init__(self, platform: str, operation: str):
        self.operation = operation
        super().__init__(f"{platform} does not support {operation}", platform=platform)


class SignatureVerificationError(NonRetryableError):
    """Inbound webhook could not be authenticated."""
    kind = "signature_verification_error"


class ValidationError(NonRetryableError):
    """Invalid input data - retrying won't help."""
    kind = "validation_error"


class InvalidStateTransitionError(NonRetryableError):
    """Connection state machine refused a transition."""
    kind = "invalid_state_transition"

    def __init__(self, current: str, target: str, platform: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(f"cannot move connection from {current} to {target}", platform=platform)


class OAuthStateError(NonRetryableError):
    """OAuth state token unknown, expired or already used."""
    kind = "oauth_state_error"


# ============================================
# PLATFORM API ERRORS - retryability by status
# ============================================
class PlatformAPIError(PlatformBridgeError):
    """
    Non-429 error response from a platform.

    Carries the platform's own error message. 5xx responses are
    retryable under the caller's policy, other 4xx are not.
    """
    kind = "platform_api_error"

    def __init__(
        self,
        platform: str,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{platform} API error ({status_code}): {message}", platform=platform)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    @property
    def not_found(self) -> bool:
        return self.status_code == 404
