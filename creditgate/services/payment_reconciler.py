"""
Payment Reconciler - Applies confirmed payment events to the credit ledger.

Each external transaction credits its account at most once. The unique index
on credit_purchases.external_transaction_id is the race-resolution point: of
two concurrent deliveries, the second insert fails and is treated as an
idempotent success. The purchase row and the ledger credit commit together.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.db.models import Account, CreditPurchase, utc_now
from creditgate.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    DuplicateEventError,
)
from creditgate.models.api import PurchaseStatus, TransactionKind
from creditgate.models.domain import (
    LedgerMetadata,
    PurchaseData,
    PurchaseMetadata,
    ReconcileResult,
)
from creditgate.observability.metrics import metrics
from creditgate.policy import GatewayPolicy, get_policy
from creditgate.services.ledger import CreditLedger

logger = get_logger(__name__)


def purchase_to_domain(purchase: CreditPurchase) -> PurchaseData:
    """Convert ORM purchase to domain model."""
    return PurchaseData(
        purchase_id=purchase.id,
        account_id=purchase.account_id,
        external_transaction_id=purchase.external_transaction_id,
        package=purchase.package,
        amount_minor=purchase.amount_minor,
        currency=purchase.currency,
        credits_granted=purchase.credits_granted,
        status=PurchaseStatus(purchase.status),
        created_at=purchase.created_at,
        completed_at=purchase.completed_at,
        credit_transaction_id=purchase.credit_transaction_id,
    )


class PaymentReconciler:
    """Idempotent application of payment confirmations."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: CreditLedger | None = None,
        policy: GatewayPolicy | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or CreditLedger(session)
        self.policy = policy or get_policy()

    async def create_pending(
        self,
        external_transaction_id: str,
        account_id: UUID,
        credits: int,
        metadata: PurchaseMetadata,
    ) -> PurchaseData:
        """Record a checkout before the processor confirms it. No credits move."""
        purchase = CreditPurchase(
            account_id=account_id,
            external_transaction_id=external_transaction_id,
            payment_reference=metadata.payment_reference,
            package=metadata.package,
            amount_minor=metadata.amount_minor,
            currency=metadata.currency,
            credits_granted=credits,
            status=PurchaseStatus.PENDING.value,
            created_at=utc_now(),
        )
        self.session.add(purchase)
        await self.session.commit()

        logger.info(
            "purchase_pending",
            purchase_id=str(purchase.id),
            account_id=str(account_id),
            external_transaction_id=external_transaction_id,
            credits=credits,
        )
        return purchase_to_domain(purchase)

    async def apply(
        self,
        external_transaction_id: str,
        account_id: UUID,
        credits: int,
        metadata: PurchaseMetadata,
    ) -> ReconcileResult:
        """
        Apply a confirmed payment.

        Returns:
            ReconcileResult with applied=False when the event was already applied

        Raises:
            AccountNotFoundError: account_id doesn't exist (nothing written)
            DataIntegrityError: pending purchase belongs to a different account
        """
        if credits <= 0:
            raise ValueError(f"Purchase credits must be positive: {credits}")

        existing = await self._find_purchase(external_transaction_id)
        if existing is not None and existing.status == PurchaseStatus.COMPLETED.value:
            return self._duplicate(existing)

        try:
            if existing is None:
                if await self.session.get(Account, account_id) is None:
                    raise AccountNotFoundError(account_id)
                purchase = await self._claim(external_transaction_id, account_id, credits, metadata)
            else:
                purchase = await self._lock_purchase(existing.id)
                if purchase.status == PurchaseStatus.COMPLETED.value:
                    await self.session.rollback()
                    return self._duplicate(purchase)
                if purchase.account_id != account_id:
                    raise DataIntegrityError(
                        f"Purchase {purchase.id} belongs to a different account"
                    )

            change = await self.ledger.stage_credit(
                purchase.account_id,
                purchase.credits_granted,
                LedgerMetadata(
                    kind=TransactionKind.PURCHASE,
                    reference=f"purchase:{external_transaction_id}",
                    description=f"Credit purchase ({purchase.package or 'custom'})",
                ),
            )

            purchase.status = PurchaseStatus.COMPLETED.value
            purchase.completed_at = utc_now()
            purchase.credit_transaction_id = change.transaction_id
            if metadata.payment_reference and not purchase.payment_reference:
                purchase.payment_reference = metadata.payment_reference

            if metadata.tier is not None:
                await self._upgrade_tier(purchase.account_id, metadata.tier)

            await self.session.flush()
            await self.session.commit()

        except DuplicateEventError:
            await self.session.rollback()
            winner = await self._find_purchase(external_transaction_id)
            if winner is None:
                raise DataIntegrityError(
                    f"Purchase {external_transaction_id} missing after duplicate insert"
                )
            return self._duplicate(winner)

        except Exception as exc:
            await self.session.rollback()
            metrics.purchases_reconciled_total.labels(result="failed").inc()
            logger.error(
                "purchase_reconcile_failed",
                external_transaction_id=external_transaction_id,
                account_id=str(account_id),
                error_type=type(exc).__name__,
            )
            raise

        metrics.purchases_reconciled_total.labels(result="applied").inc()
        metrics.credits_granted_total.labels(kind=TransactionKind.PURCHASE.value).inc(
            purchase.credits_granted
        )
        logger.info(
            "purchase_applied",
            purchase_id=str(purchase.id),
            account_id=str(purchase.account_id),
            external_transaction_id=external_transaction_id,
            credits=purchase.credits_granted,
            new_balance=change.new_balance,
        )
        return ReconcileResult(purchase=purchase_to_domain(purchase), applied=True)

    def _duplicate(self, purchase: CreditPurchase) -> ReconcileResult:
        metrics.purchases_reconciled_total.labels(result="duplicate").inc()
        logger.info(
            "purchase_already_applied",
            purchase_id=str(purchase.id),
            external_transaction_id=purchase.external_transaction_id,
        )
        return ReconcileResult(purchase=purchase_to_domain(purchase), applied=False)

    async def _claim(
        self,
        external_transaction_id: str,
        account_id: UUID,
        credits: int,
        metadata: PurchaseMetadata,
    ) -> CreditPurchase:
        """
        Insert the purchase row. The unique index decides concurrent deliveries.

        Raises:
            DuplicateEventError: another delivery inserted it first
        """
        purchase = CreditPurchase(
            account_id=account_id,
            external_transaction_id=external_transaction_id,
            payment_reference=metadata.payment_reference,
            package=metadata.package,
            amount_minor=metadata.amount_minor,
            currency=metadata.currency,
            credits_granted=credits,
            status=PurchaseStatus.PENDING.value,
            created_at=utc_now(),
        )
        self.session.add(purchase)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateEventError(external_transaction_id) from exc
        return purchase

    async def _find_purchase(self, external_transaction_id: str) -> CreditPurchase | None:
        stmt = select(CreditPurchase).where(
            CreditPurchase.external_transaction_id == external_transaction_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_purchase(self, purchase_id: UUID) -> CreditPurchase:
        """Lock a pending purchase row and re-read its status."""
        stmt = (
            select(CreditPurchase)
            .where(CreditPurchase.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise DataIntegrityError(f"Purchase {purchase_id} disappeared while locking")
        return purchase

    async def _upgrade_tier(self, account_id: UUID, tier: str) -> None:
        """Raise the account tier, never lower it. The ledger credit already holds the row lock."""
        account = await self.session.get(Account, account_id)
        if account is None:
            return
        if self.policy.tier_rank(tier) > self.policy.tier_rank(account.subscription_tier):
            logger.info(
                "subscription_tier_changed",
                account_id=str(account_id),
                previous_tier=account.subscription_tier,
                new_tier=tier,
            )
            account.subscription_tier = tier
