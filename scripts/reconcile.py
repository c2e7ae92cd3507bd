#!/usr/bin/env python3
"""
Reconciliation checks for the marketplace wallet ledger.

Usage:
  DB_URL=postgresql+psycopg2://... python scripts/reconcile.py [--fix-balances]

Checks:
- Wallet cached balances equal the signed sum of their completed ledger entries
- Every released transaction has exactly one seller proceeds entry for seller_receives
- No refunded transaction paid proceeds to the seller

With --fix-balances, updates wallet.balance_cents to match ledger sums.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import List

if not os.getenv("DB_URL"):
    print("Set DB_URL env to point to the marketplace database", file=sys.stderr)
    sys.exit(2)

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))
from marketplace.database import SessionLocal  # noqa: E402
from marketplace.models import Transaction, WalletLedgerEntry  # noqa: E402
from marketplace.services import ledger  # noqa: E402


@dataclass
class SettlementIssue:
    transaction_id: str
    problem: str
    details: str


def check_settlements(session) -> List[SettlementIssue]:
    issues: List[SettlementIssue] = []
    q = (
        session.query(Transaction)
        .filter(Transaction.payment_status.in_(["released", "refunded"]))
        .order_by(Transaction.created_at.asc())
    )
    for t in q:
        entries = (
            session.query(WalletLedgerEntry)
            .filter(
                WalletLedgerEntry.reference_type == "transaction",
                WalletLedgerEntry.reference_id == str(t.id),
            )
            .all()
        )
        if t.payment_status == "refunded":
            if entries:
                issues.append(SettlementIssue(str(t.id), "refunded_but_paid", f"{len(entries)} seller entries"))
            continue
        if len(entries) != 1:
            issues.append(SettlementIssue(str(t.id), "entries_count", f"expected 1, got {len(entries)}"))
            continue
        e = entries[0]
        if e.user_id != t.seller_user_id or e.amount_cents != t.seller_receives_cents:
            issues.append(
                SettlementIssue(
                    str(t.id),
                    "proceeds_mismatch",
                    f"entry={{amt={e.amount_cents}, user={e.user_id}}} vs seller_receives={t.seller_receives_cents}, seller={t.seller_user_id}",
                )
            )
    return issues


def main() -> int:
    fix = "--fix-balances" in sys.argv
    with SessionLocal() as session:
        mismatches = ledger.reconcile(session)
        issues = check_settlements(session)
        print(f"Wallet mismatches: {len(mismatches)}")
        for m in mismatches[:50]:
            print(f"  wallet={m['wallet_id']} user={m['user_id']} balance={m['balance_cents']} ledger_sum={m['ledger_cents']}")
        if len(mismatches) > 50:
            print(f"  ... and {len(mismatches) - 50} more")

        print(f"Settlement issues: {len(issues)}")
        for i in issues[:50]:
            print(f"  transaction={i.transaction_id} problem={i.problem} details={i.details}")
        if len(issues) > 50:
            print(f"  ... and {len(issues) - 50} more")

        if fix and mismatches:
            fixed = ledger.fix_balances(session)
            session.commit()
            print(f"Updated {fixed} wallet balances to match ledger sums.")
    return 1 if (mismatches and not fix) or issues else 0


if __name__ == "__main__":
    raise SystemExit(main())
