from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from credit_ledger.core import config as app_config
from credit_ledger.models.transaction import CreditTransaction
from credit_ledger.services.analytics import UsageAnalytics
from credit_ledger.services.credits import CreditsService
from credit_ledger.services.errors import AccountNotFoundError, InvalidEstimateError
from credit_ledger.services.tiers import Tier

NOW = datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)


def _txn(account_id, amount, type_, created_at, reference_type=None):
    return CreditTransaction(
        account_id=account_id,
        amount=amount,
        type=type_,
        reference_type=reference_type,
        reason="seed",
        balance_after=0,
        created_at=created_at,
    )


def test_usage_summary_zero_fills_days(db_session, free_account):
    db_session.add_all(
        [
            _txn(free_account.id, -5, "generation", NOW - timedelta(hours=1)),
            _txn(free_account.id, -3, "generation", NOW - timedelta(days=2)),
            _txn(free_account.id, 20, "bonus", NOW - timedelta(days=2, hours=1)),
            # Outside a 7-day window.
            _txn(free_account.id, -50, "generation", NOW - timedelta(days=10)),
        ]
    )
    db_session.commit()

    summary = UsageAnalytics(db_session).usage_summary(free_account.id, 7, now=NOW)

    assert summary.period.days == 7
    assert summary.period.start == date(2026, 4, 9)
    assert summary.period.end == date(2026, 4, 15)
    assert len(summary.daily) == 7
    assert [d.date for d in summary.daily] == sorted(d.date for d in summary.daily)
    assert summary.total_used == 8
    assert summary.total_added == 20
    assert summary.net == 12

    by_day = {d.date: d for d in summary.daily}
    assert by_day[date(2026, 4, 15)].credits_used == 5
    assert by_day[date(2026, 4, 13)].credits_used == 3
    assert by_day[date(2026, 4, 13)].credits_added == 20
    assert by_day[date(2026, 4, 10)].credits_used == 0

    by_type = {row.type: row for row in summary.by_type}
    assert by_type["generation"].total == -8
    assert by_type["generation"].count == 2
    assert by_type["bonus"].total == 20


def test_usage_summary_daily_totals_match_ledger(db_session, free_account):
    service = CreditsService(db_session)
    service.deduct(free_account.id, 4)
    service.deduct(free_account.id, 6)
    service.add(free_account.id, 30, "purchase")

    summary = UsageAnalytics(db_session).usage_summary(free_account.id)

    assert len(summary.daily) == 30
    assert sum(d.credits_used for d in summary.daily) == summary.total_used == 10
    assert sum(d.credits_added for d in summary.daily) == summary.total_added == 30


@pytest.mark.parametrize("days", [0, -1, 366, True, 1.5])
def test_usage_summary_rejects_bad_windows(db_session, free_account, days):
    with pytest.raises(InvalidEstimateError):
        UsageAnalytics(db_session).usage_summary(free_account.id, days)


def test_usage_window_limit_is_configurable(db_session, free_account):
    app_config.settings.USAGE_MAX_DAYS = 14
    with pytest.raises(InvalidEstimateError):
        UsageAnalytics(db_session).usage_summary(free_account.id, 15)
    assert len(UsageAnalytics(db_session).usage_summary(free_account.id, 14).daily) == 14


def test_usage_summary_unknown_account(db_session):
    with pytest.raises(AccountNotFoundError):
        UsageAnalytics(db_session).usage_summary("missing")


def test_workflow_and_ai_stats_are_split_by_reference(db_session, accounts):
    maker = accounts[Tier.MAKER]
    db_session.add_all(
        [
            _txn(maker.id, -6, "generation", NOW, "workflow_execution"),
            _txn(maker.id, -4, "generation", NOW - timedelta(hours=2), "workflow_execution"),
            _txn(maker.id, -9, "generation", NOW - timedelta(days=3), "workflow_execution"),
            _txn(maker.id, -2, "generation", NOW - timedelta(hours=1)),
            _txn(maker.id, -1, "generation", NOW - timedelta(hours=1), "chat"),
            _txn(maker.id, 100, "purchase", NOW, "purchase"),
        ]
    )
    db_session.commit()

    analytics = UsageAnalytics(db_session)
    workflows = analytics.workflow_stats(maker.id, now=NOW)
    assert workflows.transactions_today == 2
    assert workflows.credits_used_today == 10
    assert workflows.total_transactions == 3
    assert workflows.total_credits_used == 19
    assert workflows.free_executions_per_day == 5
    assert workflows.free_executions_remaining == 3

    ai = analytics.ai_stats(maker.id, now=NOW)
    assert ai.transactions_today == 2
    assert ai.credits_used_today == 3
    assert ai.total_transactions == 2
    assert ai.total_credits_used == 3


def test_free_runs_count_toward_workflow_activity(db_session, accounts):
    maker = accounts[Tier.MAKER]
    db_session.add_all(
        [
            _txn(maker.id, 0, "generation", NOW, "workflow_execution"),
            _txn(maker.id, 0, "generation", NOW - timedelta(hours=1), "workflow_execution"),
            _txn(maker.id, -6, "generation", NOW - timedelta(hours=2), "workflow_execution"),
        ]
    )
    db_session.commit()

    analytics = UsageAnalytics(db_session)
    workflows = analytics.workflow_stats(maker.id, now=NOW)
    assert workflows.transactions_today == 3
    assert workflows.credits_used_today == 6
    assert workflows.free_executions_remaining == 2

    # Free runs are not AI spend.
    assert analytics.ai_stats(maker.id, now=NOW).total_transactions == 0
