from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.models.account import Account
from credit_ledger.models.transaction import CreditTransaction
from credit_ledger.services.errors import (
    AccountConflictError,
    AccountNotFoundError,
    InvalidAmountError,
)
from credit_ledger.services.tiers import Tier, policy_for

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@dataclass
class DailyUsage:
    date: date
    credits_used: int
    credits_added: int


@dataclass
class BalanceSnapshot:
    account_id: str
    remaining: int
    tier: Tier
    daily_limit: int
    used_today: int
    daily_usage: DailyUsage

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.used_today)


@dataclass
class SufficiencyCheck:
    available: bool
    remaining: int
    required: int
    deficit: int


class BalanceStore:
    """
    Read side of the account balance plus provisioning/archival.

    Balance mutations live in CreditsService so every write is paired with a
    ledger row. "Today" is the current UTC calendar day; usage counters are
    derived from the ledger on read rather than stored.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, account_id: str) -> Account:
        account = self.db.get(Account, account_id, populate_existing=True) if account_id else None
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def provision_account(
        self,
        email: str,
        tier: Tier | str = Tier.FREE,
        *,
        starting_credits: int | None = None,
        is_admin: bool = False,
    ) -> Account:
        normalized_email = (email or "").strip().lower()
        if not normalized_email:
            raise ValueError("email is required")
        policy = policy_for(tier)
        grant = policy.starting_credits if starting_credits is None else starting_credits
        if isinstance(grant, bool) or not isinstance(grant, int) or grant < 0:
            raise InvalidAmountError("starting_credits must be a non-negative integer", amount=grant)

        account = Account(
            email=normalized_email,
            subscription_tier=policy.tier.value,
            credits_remaining=grant,
            initial_credits=grant,
            is_admin=bool(is_admin),
            is_active=True,
        )
        self.db.add(account)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise AccountConflictError("An account with this email already exists", email=normalized_email) from exc
        self.db.refresh(account)
        logger.info(
            "Provisioned account %s tier=%s starting_credits=%s",
            account.id,
            account.subscription_tier,
            grant,
        )
        return account

    def archive_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account.is_active:
            return account
        account.is_active = False
        account.archived_at = utc_now()
        self.db.commit()
        self.db.refresh(account)
        logger.info("Archived account %s", account.id)
        return account

    def daily_usage(self, account_id: str, *, now: datetime | None = None) -> DailyUsage:
        current = as_utc(now or utc_now())
        start = utc_day_start(current.date())
        used, added = self.db.execute(
            select(
                func.sum(case((CreditTransaction.amount < 0, -CreditTransaction.amount), else_=0)),
                func.sum(case((CreditTransaction.amount > 0, CreditTransaction.amount), else_=0)),
            ).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.created_at >= start,
                CreditTransaction.created_at < start + timedelta(days=1),
            )
        ).one()
        return DailyUsage(date=current.date(), credits_used=int(used or 0), credits_added=int(added or 0))

    def get_balance(self, account_id: str, *, now: datetime | None = None) -> BalanceSnapshot:
        account = self.get_account(account_id)
        policy = policy_for(account.subscription_tier)
        usage = self.daily_usage(account.id, now=now)
        return BalanceSnapshot(
            account_id=account.id,
            remaining=int(account.credits_remaining),
            tier=policy.tier,
            daily_limit=policy.daily_credit_limit,
            used_today=usage.credits_used,
            daily_usage=usage,
        )

    def check_sufficient(self, account_id: str, amount: int) -> SufficiencyCheck:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmountError("amount must be an integer", amount=amount)
        if amount < 0:
            raise InvalidAmountError("amount must be non-negative", amount=amount)

        account = self.get_account(account_id)
        remaining = int(account.credits_remaining)
        return SufficiencyCheck(
            available=remaining >= amount,
            remaining=remaining,
            required=amount,
            deficit=max(0, amount - remaining),
        )
