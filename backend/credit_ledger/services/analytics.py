from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.models.transaction import (
    WORKFLOW_EXECUTION_REFERENCE,
    CreditTransaction,
    TransactionType,
)
from credit_ledger.services.balances import BalanceStore, as_utc, utc_day_start, utc_now
from credit_ledger.services.errors import InvalidEstimateError
from credit_ledger.services.estimator import free_executions_remaining
from credit_ledger.services.tiers import policy_for


@dataclass
class UsagePeriod:
    days: int
    start: date
    end: date


@dataclass
class DailyUsageRow:
    date: date
    credits_used: int
    credits_added: int


@dataclass
class TypeUsageRow:
    type: str
    total: int
    count: int


@dataclass
class UsageSummary:
    period: UsagePeriod
    total_used: int
    total_added: int
    daily: list[DailyUsageRow]
    by_type: list[TypeUsageRow]

    @property
    def net(self) -> int:
        return self.total_added - self.total_used


@dataclass
class ActivityStats:
    transactions_today: int
    credits_used_today: int
    total_transactions: int
    total_credits_used: int


@dataclass
class WorkflowStats(ActivityStats):
    free_executions_per_day: int
    free_executions_remaining: int


class UsageAnalytics:
    """
    Read-only rollups over the ledger. Nothing here is cached or stored; every
    figure is recomputed from credit_transactions.
    """

    def __init__(self, db: Session):
        self.db = db
        self.balances = BalanceStore(db)

    def usage_summary(self, account_id: str, days: int = 30, *, now: datetime | None = None) -> UsageSummary:
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= settings.USAGE_MAX_DAYS:
            raise InvalidEstimateError(
                f"days must be between 1 and {settings.USAGE_MAX_DAYS}",
                field="days",
            )
        self.balances.get_account(account_id)

        end_day = as_utc(now or utc_now()).date()
        start_day = end_day - timedelta(days=days - 1)
        window_start = utc_day_start(start_day)
        window_end = utc_day_start(end_day + timedelta(days=1))

        rows = self.db.execute(
            select(CreditTransaction.amount, CreditTransaction.type, CreditTransaction.created_at).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.created_at >= window_start,
                CreditTransaction.created_at < window_end,
            )
        ).all()

        daily: dict[date, DailyUsageRow] = {}
        for offset in range(days):
            day = start_day + timedelta(days=offset)
            daily[day] = DailyUsageRow(date=day, credits_used=0, credits_added=0)

        by_type: dict[str, TypeUsageRow] = {}
        total_used = 0
        total_added = 0
        for amount, txn_type, created_at in rows:
            bucket = daily.get(as_utc(created_at).date())
            if amount < 0:
                total_used += -amount
                if bucket is not None:
                    bucket.credits_used += -amount
            else:
                total_added += amount
                if bucket is not None:
                    bucket.credits_added += amount
            row = by_type.setdefault(txn_type, TypeUsageRow(type=txn_type, total=0, count=0))
            row.total += amount
            row.count += 1

        return UsageSummary(
            period=UsagePeriod(days=days, start=start_day, end=end_day),
            total_used=total_used,
            total_added=total_added,
            daily=list(daily.values()),
            by_type=sorted(by_type.values(), key=lambda r: r.type),
        )

    def _activity(
        self,
        account_id: str,
        *filters,
        include_free: bool = False,
        now: datetime | None = None,
    ) -> tuple[int, int, int, int]:
        today_start = utc_day_start(as_utc(now or utc_now()).date())
        # Free runs are zero-amount rows; they count as activity but use no credits.
        spent = CreditTransaction.amount <= 0 if include_free else CreditTransaction.amount < 0
        base = [CreditTransaction.account_id == account_id, spent, *filters]

        total_count, total_used = self.db.execute(
            select(func.count(CreditTransaction.id), func.coalesce(func.sum(-CreditTransaction.amount), 0)).where(
                *base
            )
        ).one()
        today_count, today_used = self.db.execute(
            select(func.count(CreditTransaction.id), func.coalesce(func.sum(-CreditTransaction.amount), 0)).where(
                *base,
                CreditTransaction.created_at >= today_start,
                CreditTransaction.created_at < today_start + timedelta(days=1),
            )
        ).one()
        return int(today_count), int(today_used or 0), int(total_count), int(total_used or 0)

    def workflow_stats(self, account_id: str, *, now: datetime | None = None) -> WorkflowStats:
        account = self.balances.get_account(account_id)
        today_count, today_used, total_count, total_used = self._activity(
            account_id,
            CreditTransaction.reference_type == WORKFLOW_EXECUTION_REFERENCE,
            include_free=True,
            now=now,
        )
        policy = policy_for(account.subscription_tier)
        return WorkflowStats(
            transactions_today=today_count,
            credits_used_today=today_used,
            total_transactions=total_count,
            total_credits_used=total_used,
            free_executions_per_day=policy.free_executions_per_day,
            free_executions_remaining=free_executions_remaining(policy.tier, today_count),
        )

    def ai_stats(self, account_id: str, *, now: datetime | None = None) -> ActivityStats:
        self.balances.get_account(account_id)
        today_count, today_used, total_count, total_used = self._activity(
            account_id,
            CreditTransaction.type == TransactionType.GENERATION.value,
            (CreditTransaction.reference_type.is_(None))
            | (CreditTransaction.reference_type != WORKFLOW_EXECUTION_REFERENCE),
            now=now,
        )
        return ActivityStats(
            transactions_today=today_count,
            credits_used_today=today_used,
            total_transactions=total_count,
            total_credits_used=total_used,
        )
