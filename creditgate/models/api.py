"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TransactionKind(str, Enum):
    """Credit ledger entry kind."""

    USAGE = "usage"
    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"


class PurchaseStatus(str, Enum):
    """Credit purchase lifecycle."""

    PENDING = "pending"
    COMPLETED = "completed"


# ============================================================================
# Errors
# ============================================================================


class ErrorDetail(BaseModel):
    """Machine-readable reason code plus human-readable message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Body of every gateway rejection."""

    success: Literal[False] = False
    error: ErrorDetail


# ============================================================================
# Session / Account Models
# ============================================================================


class SessionResponse(BaseModel):
    """POST /v1/session response."""

    account_id: UUID
    email: str | None
    display_name: str | None
    credit_balance: int
    subscription_tier: str
    created: bool = Field(description="True when this login created the account")


class BalanceResponse(BaseModel):
    """GET /v1/account/balance response."""

    account_id: UUID
    credit_balance: int
    total_purchased: int
    total_requests: int
    subscription_tier: str


class CreditTransactionResponse(BaseModel):
    """A single ledger entry."""

    transaction_id: UUID
    delta: int
    resulting_balance: int
    kind: TransactionKind
    reference: str | None
    description: str | None
    created_at: datetime


class TransactionListResponse(BaseModel):
    """GET /v1/account/transactions response."""

    transactions: list[CreditTransactionResponse]
    total_count: int
    has_more: bool


class PurchaseResponse(BaseModel):
    """A single credit purchase."""

    purchase_id: UUID
    package: str | None
    amount_minor: int
    currency: str
    credits_granted: int
    status: PurchaseStatus
    created_at: datetime
    completed_at: datetime | None


class PurchaseListResponse(BaseModel):
    """GET /v1/account/purchases response."""

    purchases: list[PurchaseResponse]
    total_count: int


class PlatformUsage(BaseModel):
    """Usage totals for one platform."""

    platform: str
    requests: int
    credits_charged: int


class UsageStatsResponse(BaseModel):
    """GET /v1/account/usage response."""

    period_days: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    credits_charged: int
    average_latency_ms: int
    platforms: list[PlatformUsage]


# ============================================================================
# Credits / Checkout Models
# ============================================================================


class CreditPackageResponse(BaseModel):
    """A purchasable credit package."""

    package_id: str
    name: str
    price_minor: int
    currency: str
    credits: int
    tier: str | None


class PackageListResponse(BaseModel):
    """GET /v1/credits/packages response."""

    packages: list[CreditPackageResponse]


class CheckoutRequest(BaseModel):
    """POST /v1/credits/checkout request body."""

    package_id: str = Field(..., min_length=1, max_length=50)


class CheckoutResponse(BaseModel):
    """POST /v1/credits/checkout response."""

    purchase_id: UUID
    checkout_session_id: str
    checkout_url: str
    package_id: str
    credits: int
    price_minor: int
    currency: str


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment processor."""

    received: bool = True
    applied: bool | None = None


# ============================================================================
# API Key Models
# ============================================================================


class APIKeyCreateRequest(BaseModel):
    """POST /v1/keys request body."""

    name: str = Field(default="Default Key", min_length=1, max_length=255)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Reject whitespace-only names."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("name cannot be blank")
        return stripped


class APIKeyUpdateRequest(BaseModel):
    """PATCH /v1/keys/{key_id} request body."""

    name: str = Field(..., min_length=1, max_length=255)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Reject whitespace-only names."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("name cannot be blank")
        return stripped


class APIKeyResponse(BaseModel):
    """API key metadata. Never includes the secret or its hash."""

    key_id: UUID
    name: str
    lookup_prefix: str
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None
    total_requests: int


class APIKeyCreateResponse(BaseModel):
    """POST /v1/keys response. The plaintext key is shown exactly once."""

    key_id: UUID
    name: str
    api_key: str
    lookup_prefix: str
    created_at: datetime
    expires_at: datetime | None


class APIKeyListResponse(BaseModel):
    """GET /v1/keys response."""

    keys: list[APIKeyResponse]
    total_count: int


class APIKeyStatsResponse(BaseModel):
    """GET /v1/keys/{key_id}/stats response."""

    key_id: UUID
    period_days: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    credits_charged: int
    last_used_at: datetime | None


# ============================================================================
# Gateway Models
# ============================================================================


class ExtractionResponse(BaseModel):
    """Successful gateway response wrapping the upstream payload."""

    success: Literal[True] = True
    platform: str
    operation: str
    data: Any
    credits_charged: int
    credits_remaining: int
    response_time_ms: int


# ============================================================================
# Health
# ============================================================================


class UsageRecorderStatus(BaseModel):
    """Usage recorder health snapshot."""

    running: bool
    queue_depth: int
    dropped_entries: int
    consecutive_failures: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "degraded"]
    database: Literal["up", "down"]
    usage_recorder: UsageRecorderStatus
    version: str
