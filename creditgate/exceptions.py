"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every gateway rejection carries a stable machine-readable ``reason_code``,
the HTTP status it maps to, and a public message that is safe to return to
clients. Internal detail lives in the exception string only.
"""

from uuid import UUID


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    reason_code: str = "internal_error"
    status_code: int = 500
    public_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.public_message
        super().__init__(self.message)


# ============================================================================
# Authentication - terminal, never retried by the gateway
# ============================================================================


class AuthenticationError(GatewayError):
    """Raised when the presented secret is missing, malformed, or unverifiable."""

    status_code = 401


class MissingCredentialError(AuthenticationError):
    """No API key was presented."""

    reason_code = "missing_credential"
    public_message = "API key required. Send it in the X-API-Key header."


class MalformedCredentialError(AuthenticationError):
    """The presented API key does not match the key format."""

    reason_code = "malformed_credential"
    public_message = "API key is malformed"


class InvalidCredentialError(AuthenticationError):
    """The API key is unknown or has been revoked."""

    reason_code = "invalid_or_revoked"
    public_message = "API key is invalid or has been revoked"


# ============================================================================
# Authorization - key is genuine but may not be used right now
# ============================================================================


class AuthorizationError(GatewayError):
    """Raised when an authenticated key is not allowed to proceed."""

    status_code = 403


class KeyExpiredError(AuthorizationError):
    """The API key passed its expiry timestamp."""

    reason_code = "expired"
    public_message = "API key has expired"

    def __init__(self, key_id: UUID) -> None:
        self.key_id = key_id
        super().__init__(f"API key {key_id} has expired")


class NoCreditError(AuthorizationError):
    """Account balance was zero when the key was verified."""

    status_code = 402
    reason_code = "insufficient_credit"
    public_message = "Insufficient credits. Purchase more credits to continue."

    def __init__(self, account_id: UUID, balance: int) -> None:
        self.account_id = account_id
        self.balance = balance
        super().__init__(f"Account {account_id} has no credit (balance {balance})")


# ============================================================================
# Throttling
# ============================================================================


class ThrottleError(GatewayError):
    """Raised when a rate limit is exceeded."""

    status_code = 429
    reason_code = "rate_limited"
    public_message = "Rate limit exceeded"

    def __init__(self, retry_after: int, limit: int) -> None:
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(f"Rate limit of {limit} exceeded, retry after {retry_after}s")


# ============================================================================
# Ledger
# ============================================================================


class LedgerConflictError(GatewayError):
    """Raised when a debit would drive the balance below zero."""

    status_code = 402
    reason_code = "insufficient_credit"
    public_message = "Insufficient credits. Purchase more credits to continue."

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class DuplicateEventError(GatewayError):
    """Raised when a payment event was already recorded by another delivery."""

    status_code = 200
    reason_code = "duplicate_event"
    public_message = "Event already processed"

    def __init__(self, external_transaction_id: str) -> None:
        self.external_transaction_id = external_transaction_id
        super().__init__(f"Payment event already recorded: {external_transaction_id}")


# ============================================================================
# Upstream collaborator
# ============================================================================


class UpstreamError(GatewayError):
    """Raised when the content extraction service fails."""

    status_code = 502
    reason_code = "upstream_error"
    public_message = "Upstream extraction failed. You were not charged."


class UpstreamTimeoutError(UpstreamError):
    """Raised when the content extraction service does not answer in time."""

    status_code = 504
    public_message = "Upstream extraction timed out. You were not charged."


class UnknownEndpointError(GatewayError):
    """Raised when a platform/operation pair is not in the endpoint catalog."""

    status_code = 404
    reason_code = "unknown_endpoint"
    public_message = "Unknown endpoint"

    def __init__(self, platform: str, operation: str) -> None:
        self.platform = platform
        self.operation = operation
        super().__init__(f"Unknown endpoint: {platform}/{operation}")


# ============================================================================
# Resources and infrastructure
# ============================================================================


class ResourceNotFoundError(GatewayError):
    """Raised when a resource does not exist or is not owned by the caller."""

    status_code = 404
    reason_code = "not_found"
    public_message = "Resource not found"

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class AccountNotFoundError(ResourceNotFoundError):
    """Raised when account doesn't exist."""

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__("Account", account_id)


class WebhookVerificationError(GatewayError):
    """Raised when webhook verification fails."""

    status_code = 400
    reason_code = "invalid_signature"
    public_message = "Invalid webhook signature"


class InvalidWebhookEventError(GatewayError):
    """Raised when a verified payment event lacks usable account metadata."""

    status_code = 400
    reason_code = "invalid_event"
    public_message = "Webhook event is missing payment metadata"

    def __init__(self, event_id: str, message: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event {event_id}: {message}")


class PaymentProviderError(GatewayError):
    """Raised when payment provider operation fails."""

    status_code = 502
    reason_code = "payment_provider_error"
    public_message = "Payment provider unavailable"


class WriteVerificationError(GatewayError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(GatewayError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")
