"""
Credit Ledger - The only writer of account balances.

Every mutation locks the account row (SELECT FOR UPDATE), computes the new
balance, appends one immutable CreditTransaction and updates the balance in
the same transaction. Concurrent mutations on one account are strictly
ordered by the row lock; other accounts are unaffected.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.db.models import Account, CreditTransaction, utc_now
from creditgate.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    LedgerConflictError,
    WriteVerificationError,
)
from creditgate.models.api import TransactionKind
from creditgate.models.domain import BalanceChange, LedgerAudit, LedgerMetadata
from creditgate.observability.metrics import metrics, track_duration
from creditgate.observability.tracing import trace_operation

logger = get_logger(__name__)

DEBIT_KINDS = (TransactionKind.USAGE,)
CREDIT_KINDS = (TransactionKind.PURCHASE, TransactionKind.BONUS, TransactionKind.REFUND)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Ledger amount must be an integer: {amount!r}")
    if amount <= 0:
        raise ValueError(f"Ledger amount must be positive: {amount}")


def compute_debit(balance: int, amount: int) -> int:
    """
    New balance after a debit.

    Raises:
        LedgerConflictError: the debit would drive the balance below zero
    """
    _validate_amount(amount)
    new_balance = balance - amount
    if new_balance < 0:
        raise LedgerConflictError(balance, amount)
    return new_balance


def compute_credit(balance: int, amount: int) -> int:
    """New balance after a credit."""
    _validate_amount(amount)
    return balance + amount


class CreditLedger:
    """
    Atomic per-account balance mutations.

    debit/credit commit their own transaction. stage_debit/stage_credit do the
    same work inside the caller's transaction so it can commit other rows
    (a completed purchase, a new account) together with the balance change.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def debit(
        self, account_id: UUID, amount: int, metadata: LedgerMetadata
    ) -> BalanceChange:
        """
        Debit credits for a served request.

        Raises:
            AccountNotFoundError: Account doesn't exist
            LedgerConflictError: Balance is lower than amount (nothing written)
        """
        with track_duration() as timer:
            try:
                change = await self.stage_debit(account_id, amount, metadata)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                metrics.record_ledger_operation(
                    "debit", metadata.kind.value, False, amount, timer.elapsed
                )
                if not isinstance(exc, LedgerConflictError):
                    metrics.record_error(type(exc).__name__, "ledger_debit")
                raise

        metrics.record_ledger_operation("debit", metadata.kind.value, True, amount, timer.elapsed)
        logger.info(
            "credit_debited",
            account_id=str(account_id),
            amount=amount,
            previous_balance=change.previous_balance,
            new_balance=change.new_balance,
            reference=metadata.reference,
        )
        return change

    async def credit(
        self, account_id: UUID, amount: int, metadata: LedgerMetadata
    ) -> BalanceChange:
        """
        Add credits (purchase, bonus, refund).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        with track_duration() as timer:
            try:
                change = await self.stage_credit(account_id, amount, metadata)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                metrics.record_ledger_operation(
                    "credit", metadata.kind.value, False, amount, timer.elapsed
                )
                metrics.record_error(type(exc).__name__, "ledger_credit")
                raise

        metrics.record_ledger_operation("credit", metadata.kind.value, True, amount, timer.elapsed)
        logger.info(
            "credit_added",
            account_id=str(account_id),
            amount=amount,
            kind=metadata.kind.value,
            previous_balance=change.previous_balance,
            new_balance=change.new_balance,
            reference=metadata.reference,
        )
        return change

    async def stage_debit(
        self, account_id: UUID, amount: int, metadata: LedgerMetadata
    ) -> BalanceChange:
        """Lock, check and debit without committing."""
        if metadata.kind not in DEBIT_KINDS:
            raise ValueError(f"{metadata.kind.value} is not a debit kind")
        _validate_amount(amount)

        with trace_operation("ledger_debit", account_id=account_id, amount=amount):
            account = await self._lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            try:
                compute_debit(account.credit_balance, amount)
            except LedgerConflictError:
                logger.info(
                    "debit_rejected_insufficient_credit",
                    account_id=str(account_id),
                    balance=account.credit_balance,
                    required=amount,
                    reference=metadata.reference,
                )
                raise

            return await self._append(account, -amount, metadata)

    async def stage_credit(
        self, account_id: UUID, amount: int, metadata: LedgerMetadata
    ) -> BalanceChange:
        """Lock and credit without committing."""
        if metadata.kind not in CREDIT_KINDS:
            raise ValueError(f"{metadata.kind.value} is not a credit kind")
        _validate_amount(amount)

        with trace_operation("ledger_credit", account_id=account_id, amount=amount):
            account = await self._lock_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            return await self._append(account, amount, metadata)

    async def get_balance(self, account_id: UUID) -> int:
        """Current balance, read without locking."""
        stmt = select(Account.credit_balance).where(Account.id == account_id)
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    async def list_transactions(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[CreditTransaction], int]:
        """Ledger entries for an account, newest first, plus the total count."""
        count_stmt = select(func.count(CreditTransaction.id)).where(
            CreditTransaction.account_id == account_id
        )
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def audit_account(self, account_id: UUID) -> LedgerAudit:
        """Compare the stored balance against the ledger sum."""
        balance = await self.get_balance(account_id)
        stmt = select(
            func.coalesce(func.sum(CreditTransaction.delta), 0),
            func.count(CreditTransaction.id),
        ).where(CreditTransaction.account_id == account_id)
        ledger_sum, entry_count = (await self.session.execute(stmt)).one()
        return LedgerAudit(
            account_id=account_id,
            stored_balance=balance,
            ledger_sum=int(ledger_sum),
            entry_count=int(entry_count),
        )

    async def _append(
        self, account: Account, delta: int, metadata: LedgerMetadata
    ) -> BalanceChange:
        """Write the ledger row and the new balance, then verify both."""
        previous_balance = account.credit_balance
        new_balance = previous_balance + delta

        entry = CreditTransaction(
            id=uuid4(),
            account_id=account.id,
            delta=delta,
            resulting_balance=new_balance,
            kind=metadata.kind.value,
            reference=metadata.reference,
            description=metadata.description,
            created_at=utc_now(),
        )
        self.session.add(entry)

        account.credit_balance = new_balance
        if metadata.kind == TransactionKind.USAGE:
            account.total_requests = account.total_requests + 1
        elif metadata.kind == TransactionKind.PURCHASE:
            account.total_purchased = account.total_purchased + delta
        await self.session.flush()

        verified_account = await self.session.get(Account, account.id)
        if verified_account is None:
            raise WriteVerificationError(f"Account {account.id} disappeared after update")
        if verified_account.credit_balance != new_balance:
            raise DataIntegrityError(
                f"Balance mismatch: expected {new_balance}, got {verified_account.credit_balance}"
            )

        return BalanceChange(
            account_id=account.id,
            transaction_id=entry.id,
            kind=metadata.kind,
            delta=delta,
            previous_balance=previous_balance,
            new_balance=new_balance,
        )

    async def _lock_account(self, account_id: UUID) -> Account | None:
        """
        Lock account row for update (SELECT FOR UPDATE).

        populate_existing refreshes an already-loaded instance so the balance
        read under the lock is never a stale identity-map copy.
        """
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
