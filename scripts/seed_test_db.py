"""
Dev-only seed script for the credit ledger.

What it does:
- Drops and recreates the accounts / credit_transactions schema.
- Provisions one account per subscription tier (plus an admin) with the
  tier's starting grant.
- Optionally appends a bonus transaction to every account (--bonus N).
- Prints a bearer token per account for manual API testing.

Guardrails:
- Requires ENV=dev
- Requires confirmation prompt unless --yes is passed
- Logs actions to logs/ with a timestamped file
"""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
import sys
from typing import Iterable


# Allow `import credit_ledger.*` from backend/
REPO_ROOT = Path(__file__).resolve().parents[1]
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


from credit_ledger.core.base import Base  # noqa: E402
from credit_ledger.core.config import settings  # noqa: E402
from credit_ledger.core.database import SessionLocal, engine  # noqa: E402
from credit_ledger.core.security import create_access_token  # noqa: E402
from credit_ledger.models.account import Account  # noqa: E402,F401
from credit_ledger.models.transaction import CreditTransaction, TransactionType  # noqa: E402,F401
from credit_ledger.services.balances import BalanceStore  # noqa: E402
from credit_ledger.services.credits import CreditsService  # noqa: E402
from credit_ledger.services.tiers import Tier  # noqa: E402


SEED_ACCOUNTS = [
    ("free@synthstack.test", Tier.FREE, False),
    ("maker@synthstack.test", Tier.MAKER, False),
    ("pro@synthstack.test", Tier.PRO, False),
    ("agency@synthstack.test", Tier.AGENCY, False),
    ("admin@synthstack.test", Tier.ADMIN, True),
]


def utc_now_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def log_write(fp: Path, lines: Iterable[str]) -> None:
    fp.parent.mkdir(parents=True, exist_ok=True)
    with fp.open("a", encoding="utf-8") as f:
        for line in lines:
            f.write(line.rstrip("\n") + "\n")


def main() -> int:
    parser = argparse.ArgumentParser(description="Dev seed: reset schema + provision one account per tier.")
    parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt.")
    parser.add_argument("--bonus", type=int, default=0, help="Bonus credits to add to every seeded account.")
    parser.add_argument("--token-minutes", type=int, default=24 * 60, help="Lifetime of the printed tokens.")
    args = parser.parse_args()

    if (settings.ENV or "").strip().lower() != "dev":
        print(f"Refusing to run: ENV must be 'dev' (got {settings.ENV!r})")
        return 2
    if args.bonus < 0:
        print("--bonus must be non-negative")
        return 2

    log_path = REPO_ROOT / "logs" / f"seed_test_db_{utc_now_stamp()}.log"
    log_write(log_path, [f"[start] {datetime.now(timezone.utc).isoformat()} env={settings.ENV}"])
    log_write(log_path, [f"[db] dialect={engine.dialect.name} (creds redacted)"])

    if not args.yes:
        msg = (
            "WARNING: This will DROP and recreate tables:\n"
            f"  {', '.join(sorted(Base.metadata.tables))}\n\n"
            "Type SEED to continue: "
        )
        resp = input(msg).strip()
        if resp != "SEED":
            print("Cancelled.")
            log_write(log_path, ["[cancelled] user did not confirm"])
            return 1

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    log_write(log_path, ["[db] schema recreated"])

    with SessionLocal() as db:
        store = BalanceStore(db)
        credits = CreditsService(db)
        for email, tier, is_admin in SEED_ACCOUNTS:
            account = store.provision_account(email, tier, is_admin=is_admin)
            balance = account.credits_remaining
            if args.bonus:
                balance = credits.add(
                    account.id,
                    args.bonus,
                    TransactionType.BONUS,
                    "Seed bonus",
                    idempotency_key="seed-bonus",
                ).new_balance
            token = create_access_token(account.id, expires_minutes=args.token_minutes)
            log_write(log_path, [f"[seed] account={account.id} tier={tier.value} balance={balance}"])
            print(f"{tier.value:<7} {email:<26} id={account.id} balance={balance}")
            print(f"        token={token}")

    log_write(log_path, [f"[done] {datetime.now(timezone.utc).isoformat()}"])
    print(f"Done. Log written to: {log_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
