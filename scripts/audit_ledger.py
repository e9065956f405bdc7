#!/usr/bin/env python3
"""
CreditGate ledger audit.

Checks, for every account, that the stored credit_balance equals the sum of
its credit_transactions deltas. Exits non-zero when any account disagrees.

Usage:
    # Audit every account
    python3 scripts/audit_ledger.py

    # Audit one account
    python3 scripts/audit_ledger.py --account 6f1c...-...

    # Machine-readable output
    python3 scripts/audit_ledger.py --json
"""

import argparse
import asyncio
import json
import sys
from uuid import UUID

from sqlalchemy import func, select

from creditgate.db.models import Account, CreditTransaction
from creditgate.db.session import close_engines, get_read_session_factory
from creditgate.models.domain import LedgerAudit
from creditgate.observability import get_logger, setup_logging
from creditgate.services.ledger import CreditLedger

logger = get_logger("creditgate.audit")


async def audit_all() -> list[LedgerAudit]:
    """One aggregate query over all accounts."""
    ledger = (
        select(
            CreditTransaction.account_id.label("account_id"),
            func.sum(CreditTransaction.delta).label("ledger_sum"),
            func.count(CreditTransaction.id).label("entry_count"),
        )
        .group_by(CreditTransaction.account_id)
        .subquery()
    )
    stmt = (
        select(
            Account.id,
            Account.credit_balance,
            func.coalesce(ledger.c.ledger_sum, 0),
            func.coalesce(ledger.c.entry_count, 0),
        )
        .outerjoin(ledger, ledger.c.account_id == Account.id)
        .order_by(Account.created_at)
    )

    async with get_read_session_factory()() as session:
        rows = (await session.execute(stmt)).all()

    return [
        LedgerAudit(
            account_id=row[0],
            stored_balance=int(row[1]),
            ledger_sum=int(row[2]),
            entry_count=int(row[3]),
        )
        for row in rows
    ]


async def audit_one(account_id: UUID) -> list[LedgerAudit]:
    async with get_read_session_factory()() as session:
        return [await CreditLedger(session).audit_account(account_id)]


async def main(args: argparse.Namespace) -> int:
    try:
        audits = await (audit_one(args.account) if args.account else audit_all())
    finally:
        await close_engines()

    mismatched = [a for a in audits if not a.consistent]
    for audit in mismatched:
        logger.error(
            "ledger_mismatch",
            account_id=str(audit.account_id),
            stored_balance=audit.stored_balance,
            ledger_sum=audit.ledger_sum,
            entry_count=audit.entry_count,
        )

    if args.json:
        print(
            json.dumps(
                {
                    "accounts_checked": len(audits),
                    "mismatched": [
                        {
                            "account_id": str(a.account_id),
                            "stored_balance": a.stored_balance,
                            "ledger_sum": a.ledger_sum,
                        }
                        for a in mismatched
                    ],
                }
            )
        )
    else:
        logger.info("ledger_audit_complete", accounts_checked=len(audits), mismatched=len(mismatched))

    return 1 if mismatched else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Verify credit balances against the ledger")
    parser.add_argument("--account", type=UUID, help="Audit a single account id")
    parser.add_argument("--json", action="store_true", help="Print a JSON summary")
    setup_logging()
    sys.exit(asyncio.run(main(parser.parse_args())))
