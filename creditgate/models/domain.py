"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from creditgate.models.api import PurchaseStatus, TransactionKind


@dataclass(frozen=True)
class AccountIdentity:
    """Identity provider subject that owns an account."""

    oauth_provider: str
    external_id: str

    def __post_init__(self) -> None:
        """Validate account identity fields."""
        if not self.oauth_provider.startswith("oauth:"):
            raise ValueError(f"Invalid oauth_provider: {self.oauth_provider}")
        if not self.external_id:
            raise ValueError("external_id cannot be empty")


@dataclass(frozen=True)
class AccountData:
    """Account snapshot returned from services."""

    account_id: UUID
    oauth_provider: str
    external_id: str
    email: str | None
    display_name: str | None
    credit_balance: int
    total_purchased: int
    total_requests: int
    subscription_tier: str
    created_at: datetime


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class LedgerMetadata:
    """Describes why a ledger mutation happens."""

    kind: TransactionKind
    reference: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class BalanceChange:
    """Result of a single ledger mutation."""

    account_id: UUID
    transaction_id: UUID
    kind: TransactionKind
    delta: int
    previous_balance: int
    new_balance: int

    def __post_init__(self) -> None:
        """Validate balance arithmetic."""
        if self.new_balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.new_balance}")
        if self.previous_balance + self.delta != self.new_balance:
            raise ValueError(
                f"Inconsistent balance change: {self.previous_balance} + {self.delta} "
                f"!= {self.new_balance}"
            )


@dataclass(frozen=True)
class LedgerAudit:
    """Stored balance versus the sum of its ledger entries."""

    account_id: UUID
    stored_balance: int
    ledger_sum: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.ledger_sum


# ============================================================================
# API Keys
# ============================================================================


@dataclass(frozen=True)
class APIKeyData:
    """API key metadata. Never carries the secret or its hash."""

    key_id: UUID
    account_id: UUID
    name: str
    lookup_prefix: str
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None
    total_requests: int


@dataclass(frozen=True)
class GeneratedAPIKey:
    """Newly generated API key. The plaintext is shown once and never stored."""

    key_id: UUID
    account_id: UUID
    plaintext_key: str
    lookup_prefix: str
    name: str
    created_at: datetime
    expires_at: datetime | None


@dataclass(frozen=True)
class VerifiedKey:
    """Successful key verification."""

    account: AccountData
    key: APIKeyData
    has_credit: bool


@dataclass(frozen=True)
class KeyUsageSummary:
    """Request totals for a single key."""

    key_id: UUID
    period_days: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    credits_charged: int
    last_used_at: datetime | None


# ============================================================================
# Purchases
# ============================================================================


@dataclass(frozen=True)
class PurchaseMetadata:
    """Payment details attached to a reconciled purchase."""

    package: str | None = None
    amount_minor: int = 0
    currency: str = "USD"
    payment_reference: str | None = None
    tier: str | None = None

    def __post_init__(self) -> None:
        """Validate purchase metadata."""
        if self.amount_minor < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class PurchaseData:
    """Credit purchase snapshot."""

    purchase_id: UUID
    account_id: UUID
    external_transaction_id: str
    package: str | None
    amount_minor: int
    currency: str
    credits_granted: int
    status: PurchaseStatus
    created_at: datetime
    completed_at: datetime | None
    credit_transaction_id: UUID | None


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying a payment event."""

    purchase: PurchaseData
    applied: bool


# ============================================================================
# Usage
# ============================================================================


@dataclass(frozen=True)
class UsageEntry:
    """One request log line, written behind the request."""

    account_id: UUID
    api_key_id: UUID | None
    endpoint: str
    platform: str | None
    operation: str | None
    outcome: str
    status_code: int
    latency_ms: int
    credits_charged: int
    request_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class KeyTouch:
    """Deferred last-used bump for an API key."""

    key_id: UUID
    used_at: datetime
