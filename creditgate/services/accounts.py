"""
Account Service - Session exchange, balances and account history.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.db.models import Account, APIRequestLog, CreditPurchase, utc_now
from creditgate.exceptions import AccountNotFoundError, WriteVerificationError
from creditgate.models.api import PlatformUsage, TransactionKind, UsageStatsResponse
from creditgate.models.domain import AccountData, AccountIdentity, LedgerMetadata, PurchaseData
from creditgate.observability.metrics import metrics
from creditgate.policy import GatewayPolicy, get_policy
from creditgate.services.ledger import CreditLedger
from creditgate.services.payment_reconciler import purchase_to_domain

logger = get_logger(__name__)

SIGNUP_BONUS_REFERENCE = "signup_bonus"


def account_to_domain(account: Account) -> AccountData:
    """Convert ORM account to domain model."""
    return AccountData(
        account_id=account.id,
        oauth_provider=account.oauth_provider,
        external_id=account.external_id,
        email=account.email,
        display_name=account.display_name,
        credit_balance=account.credit_balance,
        total_purchased=account.total_purchased,
        total_requests=account.total_requests,
        subscription_tier=account.subscription_tier,
        created_at=account.created_at,
    )


class AccountService:
    """Account lookups and creation. Balance changes always go through CreditLedger."""

    def __init__(self, session: AsyncSession, policy: GatewayPolicy | None = None) -> None:
        self.session = session
        self.policy = policy or get_policy()

    async def get_or_create_account(
        self,
        identity: AccountIdentity,
        email: str | None = None,
        display_name: str | None = None,
    ) -> tuple[AccountData, bool]:
        """
        Get existing account or create a new one with the signup bonus.

        Returns:
            (account, created)
        """
        account = await self._find_account_by_identity(identity)
        if account is not None:
            return account_to_domain(account), False

        new_account = Account(
            oauth_provider=identity.oauth_provider,
            external_id=identity.external_id,
            email=email,
            display_name=display_name,
            credit_balance=0,
            total_purchased=0,
            total_requests=0,
            subscription_tier=self.policy.default_tier,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - account created by a concurrent login
            await self.session.rollback()
            account = await self._find_account_by_identity(identity)
            if account is None:
                raise WriteVerificationError("Account creation failed due to race condition")
            return account_to_domain(account), False

        bonus = self.policy.signup_bonus_credits
        try:
            if bonus > 0:
                await CreditLedger(self.session).stage_credit(
                    new_account.id,
                    bonus,
                    LedgerMetadata(
                        kind=TransactionKind.BONUS,
                        reference=SIGNUP_BONUS_REFERENCE,
                        description="Welcome bonus credits",
                    ),
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        metrics.accounts_created_total.inc()
        if bonus > 0:
            metrics.credits_granted_total.labels(kind=TransactionKind.BONUS.value).inc(bonus)
        logger.info(
            "account_created",
            account_id=str(new_account.id),
            oauth_provider=identity.oauth_provider,
            signup_bonus=bonus,
        )
        return account_to_domain(new_account), True

    async def get_account(self, account_id: UUID) -> AccountData:
        """
        Get account by id.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account_to_domain(account)

    async def get_account_by_identity(self, identity: AccountIdentity) -> AccountData | None:
        account = await self._find_account_by_identity(identity)
        return account_to_domain(account) if account is not None else None

    async def list_purchases(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[PurchaseData], int]:
        """Purchases of an account, newest first, plus the total count."""
        count_stmt = select(func.count(CreditPurchase.id)).where(
            CreditPurchase.account_id == account_id
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(CreditPurchase)
            .where(CreditPurchase.account_id == account_id)
            .order_by(CreditPurchase.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [purchase_to_domain(p) for p in result.scalars().all()], total

    async def get_usage_stats(self, account_id: UUID, period_days: int = 30) -> UsageStatsResponse:
        """Aggregate request log totals over the last period_days."""
        since = utc_now() - timedelta(days=period_days)
        success = case((APIRequestLog.outcome == "success", 1), else_=0)

        totals_stmt = select(
            func.count(APIRequestLog.id),
            func.coalesce(func.sum(success), 0),
            func.coalesce(func.sum(APIRequestLog.credits_charged), 0),
            func.coalesce(func.avg(APIRequestLog.latency_ms), 0),
        ).where(APIRequestLog.account_id == account_id, APIRequestLog.created_at >= since)
        total, successful, credits, avg_latency = (await self.session.execute(totals_stmt)).one()

        platform_stmt = (
            select(
                APIRequestLog.platform,
                func.count(APIRequestLog.id),
                func.coalesce(func.sum(APIRequestLog.credits_charged), 0),
            )
            .where(
                APIRequestLog.account_id == account_id,
                APIRequestLog.created_at >= since,
                APIRequestLog.platform.is_not(None),
            )
            .group_by(APIRequestLog.platform)
            .order_by(func.count(APIRequestLog.id).desc())
        )
        platform_rows = (await self.session.execute(platform_stmt)).all()

        return UsageStatsResponse(
            period_days=period_days,
            total_requests=int(total),
            successful_requests=int(successful),
            failed_requests=int(total) - int(successful),
            credits_charged=int(credits),
            average_latency_ms=int(round(float(avg_latency))),
            platforms=[
                PlatformUsage(platform=row[0], requests=int(row[1]), credits_charged=int(row[2]))
                for row in platform_rows
            ],
        )

    async def _find_account_by_identity(self, identity: AccountIdentity) -> Account | None:
        stmt = select(Account).where(
            Account.oauth_provider == identity.oauth_provider,
            Account.external_id == identity.external_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
