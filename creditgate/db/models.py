"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from creditgate.models.api import PurchaseStatus, TransactionKind


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    credit_balance is written only by the credit ledger, always together with
    a credit_transactions row. Accounts are never hard-deleted.
    """

    __tablename__ = "accounts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity fields
    oauth_provider: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Contact information
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Balance and counters
    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Plan
    subscription_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("total_purchased >= 0", name="ck_accounts_total_purchased_non_negative"),
        CheckConstraint("total_requests >= 0", name="ck_accounts_total_requests_non_negative"),
        UniqueConstraint("oauth_provider", "external_id", name="uq_accounts_identity"),
        Index("idx_accounts_email", "email"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, provider={self.oauth_provider}, "
            f"balance={self.credit_balance}, tier={self.subscription_tier})>"
        )


class APIKey(Base):
    """
    ORM model for api_keys table.

    Stores Argon2id hashes of API keys. lookup_prefix narrows verification to a
    handful of candidates and is deliberately not unique.
    """

    __tablename__ = "api_keys"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Ownership
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Key storage (hashed with Argon2id)
    secret_hash: Mapped[str] = mapped_column(Text, nullable=False)
    lookup_prefix: Mapped[str] = mapped_column(String(32), nullable=False)

    # Metadata
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Usage tracking
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        Index(
            "idx_api_keys_lookup_prefix_active",
            "lookup_prefix",
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<APIKey(id={self.id}, name={self.name}, "
            f"prefix={self.lookup_prefix}, active={self.is_active})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger. For every account, credit_balance equals the sum of
    delta over its rows.
    """

    __tablename__ = "credit_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Foreign Keys
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Entry
    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resulting_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_credit_transactions_delta_non_zero"),
        CheckConstraint(
            "resulting_balance >= 0", name="ck_credit_transactions_balance_non_negative"
        ),
        CheckConstraint(
            "kind IN ("
            + ", ".join(f"'{k.value}'" for k in TransactionKind)
            + ")",
            name="ck_credit_transactions_kind",
        ),
        Index("idx_credit_transactions_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, account_id={self.account_id}, "
            f"delta={self.delta}, kind={self.kind})>"
        )


class CreditPurchase(Base):
    """
    ORM model for credit_purchases table.

    external_transaction_id is unique; the insert against that index decides
    which of two concurrent deliveries of the same payment event wins.
    """

    __tablename__ = "credit_purchases"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Foreign Keys
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    credit_transaction_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("credit_transactions.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # Payment
    external_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    package: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    credits_granted: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PurchaseStatus.PENDING.value
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "external_transaction_id", name="uq_credit_purchases_external_transaction_id"
        ),
        CheckConstraint("credits_granted > 0", name="ck_credit_purchases_credits_positive"),
        CheckConstraint("amount_minor >= 0", name="ck_credit_purchases_amount_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'completed')", name="ck_credit_purchases_status"
        ),
        CheckConstraint(
            "status <> 'completed' OR credit_transaction_id IS NOT NULL",
            name="ck_credit_purchases_completed_has_transaction",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditPurchase(id={self.id}, external_id={self.external_transaction_id}, "
            f"status={self.status})>"
        )


class APIRequestLog(Base):
    """
    ORM model for api_request_logs table.

    Append-only, written behind the request by the usage recorder.
    """

    __tablename__ = "api_request_logs"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Foreign Keys
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    api_key_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("api_keys.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Request
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str | None] = mapped_column(String(50), nullable=True)
    operation: Mapped[str | None] = mapped_column(String(50), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Outcome
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_charged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_charged >= 0", name="ck_api_request_logs_credits_non_negative"),
        Index("idx_api_request_logs_account_created", "account_id", "created_at"),
        Index("idx_api_request_logs_key_created", "api_key_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<APIRequestLog(id={self.id}, endpoint={self.endpoint}, "
            f"outcome={self.outcome}, status={self.status_code})>"
        )
