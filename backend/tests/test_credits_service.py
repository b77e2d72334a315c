from __future__ import annotations

import pytest

from credit_ledger.core import config as app_config
from credit_ledger.models.transaction import CreditTransaction
from credit_ledger.services.balances import BalanceStore
from credit_ledger.services.credits import CreditsService
from credit_ledger.services.errors import (
    AccountNotFoundError,
    ForbiddenError,
    FreeExecutionsExhaustedError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerContentionError,
    LedgerImmutableError,
)
from credit_ledger.services.estimator import estimate_workflow_cost
from credit_ledger.services.tiers import Tier


def _ledger_rows(db_session, account_id):
    return (
        db_session.query(CreditTransaction)
        .filter(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.id)
        .all()
    )


def test_deduct_estimated_workflow_cost(db_session, free_account):
    estimate = estimate_workflow_cost(node_count=10, estimated_duration_seconds=60, tier=free_account.subscription_tier)
    assert estimate.estimated_total == 8

    result = CreditsService(db_session).deduct(
        free_account.id,
        estimate.estimated_total,
        reason="Workflow run",
        reference_type="workflow_execution",
        reference_id="exec-1",
    )

    assert result.deducted == 8
    assert result.remaining == 92
    assert result.replayed is False

    rows = _ledger_rows(db_session, free_account.id)
    assert len(rows) == 1
    assert rows[0].id == result.transaction_id
    assert rows[0].amount == -8
    assert rows[0].type == "generation"
    assert rows[0].balance_after == 92
    assert rows[0].reference_type == "workflow_execution"


def test_deduct_insufficient_leaves_state_unchanged(db_session, free_account):
    service = CreditsService(db_session)
    try:
        service.deduct(free_account.id, 150)
        assert False, "expected InsufficientCreditsError"
    except InsufficientCreditsError as exc:
        assert exc.required == 150
        assert exc.remaining == 100
        assert exc.deficit == 50
        assert exc.status_code == 402

    assert BalanceStore(db_session).get_balance(free_account.id).remaining == 100
    assert _ledger_rows(db_session, free_account.id) == []


def test_deduct_entire_balance(db_session, free_account):
    result = CreditsService(db_session).deduct(free_account.id, 100)
    assert result.remaining == 0
    with pytest.raises(InsufficientCreditsError):
        CreditsService(db_session).deduct(free_account.id, 1)


@pytest.mark.parametrize("amount", [0, -5, 2.5, True, "3"])
def test_deduct_rejects_invalid_amounts(db_session, free_account, amount):
    with pytest.raises(InvalidAmountError):
        CreditsService(db_session).deduct(free_account.id, amount)
    assert _ledger_rows(db_session, free_account.id) == []


def test_deduct_unknown_account(db_session):
    with pytest.raises(AccountNotFoundError):
        CreditsService(db_session).deduct("missing", 1)


def test_add_credits(db_session, free_account):
    result = CreditsService(db_session).add(free_account.id, 250, "purchase", "Top-up", "pi_123")

    assert result.added == 250
    assert result.new_balance == 350
    row = _ledger_rows(db_session, free_account.id)[0]
    assert row.amount == 250
    assert row.type == "purchase"
    assert row.reference_type == "purchase"
    assert row.reference_id == "pi_123"


def test_add_rejects_debit_types(db_session, free_account):
    with pytest.raises(InvalidAmountError):
        CreditsService(db_session).add(free_account.id, 10, "generation")
    with pytest.raises(InvalidAmountError):
        CreditsService(db_session).add(free_account.id, 10, "gift")


def test_add_unknown_account_is_not_found(db_session):
    try:
        CreditsService(db_session).add("missing", 10)
        assert False, "expected AccountNotFoundError"
    except AccountNotFoundError as exc:
        assert "User not found" in exc.message


def test_adjust_requires_admin(db_session, accounts):
    target = accounts[Tier.FREE]
    non_admin = accounts[Tier.AGENCY]
    with pytest.raises(ForbiddenError):
        CreditsService(db_session).adjust(target.id, -20, "Cleanup", actor=non_admin)

    assert BalanceStore(db_session).get_balance(target.id).remaining == 100
    assert _ledger_rows(db_session, target.id) == []


def test_adjust_by_admin_records_actor(db_session, accounts, admin_account):
    target = accounts[Tier.FREE]
    service = CreditsService(db_session)

    down = service.adjust(target.id, -20, "Chargeback", "ticket 42", actor=admin_account)
    up = service.adjust(target.id, 5, "Goodwill", actor=admin_account)

    assert down.adjustment == -20
    assert down.new_balance == 80
    assert up.new_balance == 85

    rows = _ledger_rows(db_session, target.id)
    assert [r.amount for r in rows] == [-20, 5]
    assert rows[0].type == "admin_adjustment"
    assert rows[0].actor_id == admin_account.id
    assert rows[0].notes == "ticket 42"


def test_admin_tier_can_adjust(db_session, accounts):
    admin_tier = BalanceStore(db_session).provision_account("ops@example.com", Tier.ADMIN)
    result = CreditsService(db_session).adjust(accounts[Tier.PRO].id, 10, "Promo", actor=admin_tier)
    assert result.new_balance == 510


def test_adjust_cannot_go_negative(db_session, accounts, admin_account):
    target = accounts[Tier.FREE]
    with pytest.raises(InsufficientCreditsError):
        CreditsService(db_session).adjust(target.id, -101, "Too much", actor=admin_account)
    with pytest.raises(InvalidAmountError):
        CreditsService(db_session).adjust(target.id, 0, "Nothing", actor=admin_account)
    assert BalanceStore(db_session).get_balance(target.id).remaining == 100


def test_idempotent_deduct_replays(db_session, free_account):
    service = CreditsService(db_session)
    first = service.deduct(free_account.id, 10, idempotency_key="run-1")
    again = service.deduct(free_account.id, 10, idempotency_key="run-1")

    assert again.replayed is True
    assert again.transaction_id == first.transaction_id
    assert again.remaining == 90
    assert len(_ledger_rows(db_session, free_account.id)) == 1


def test_idempotency_key_is_scoped_per_account(db_session, accounts):
    service = CreditsService(db_session)
    a = service.add(accounts[Tier.FREE].id, 5, idempotency_key="evt_1")
    b = service.add(accounts[Tier.PRO].id, 5, idempotency_key="evt_1")
    assert a.transaction_id != b.transaction_id
    assert b.replayed is False


def test_history_is_newest_first_and_paginated(db_session, free_account):
    service = CreditsService(db_session)
    for amount in (1, 2, 3):
        service.deduct(free_account.id, amount)
    service.add(free_account.id, 10, "bonus")

    page = service.list_transactions(free_account.id, limit=2)
    assert page.total == 4
    assert page.has_more is True
    assert [t.amount for t in page.transactions] == [10, -3]

    rest = service.list_transactions(free_account.id, limit=2, offset=2)
    assert [t.amount for t in rest.transactions] == [-2, -1]
    assert rest.has_more is False

    bonuses = service.list_transactions(free_account.id, type="bonus")
    assert [t.amount for t in bonuses.transactions] == [10]


def test_history_limit_is_clamped(db_session, free_account):
    app_config.settings.HISTORY_MAX_PAGE_SIZE = 5
    page = CreditsService(db_session).list_transactions(free_account.id, limit=1000)
    assert page.limit == 5


def test_ledger_reconciles_with_balance(db_session, accounts, admin_account):
    target = accounts[Tier.MAKER]
    service = CreditsService(db_session)
    service.deduct(target.id, 40)
    service.add(target.id, 15, "refund")
    service.adjust(target.id, -5, "Fix", actor=admin_account)

    result = service.reconcile(target.id)
    assert result.ledger_total == -30
    assert result.initial_credits == 250
    assert result.credits_remaining == 220
    assert result.balanced is True


def test_archived_account_rejects_mutations(db_session, free_account):
    BalanceStore(db_session).archive_account(free_account.id)
    with pytest.raises(AccountNotFoundError):
        CreditsService(db_session).deduct(free_account.id, 1)
    with pytest.raises(AccountNotFoundError):
        CreditsService(db_session).add(free_account.id, 1)


def test_ledger_rows_are_immutable(db_session, free_account):
    CreditsService(db_session).deduct(free_account.id, 5)
    row = _ledger_rows(db_session, free_account.id)[0]

    row.amount = -1
    with pytest.raises(LedgerImmutableError):
        db_session.flush()
    db_session.rollback()

    db_session.delete(row)
    with pytest.raises(LedgerImmutableError):
        db_session.flush()
    db_session.rollback()

    assert _ledger_rows(db_session, free_account.id)[0].amount == -5


def test_lost_swaps_retry_then_give_up(db_session, free_account, monkeypatch):
    app_config.settings.LEDGER_MAX_RETRIES = 3
    calls = []

    def always_lose(self, account, delta):  # noqa: ARG001
        calls.append(delta)
        return None

    monkeypatch.setattr(CreditsService, "_compare_and_swap", always_lose)
    with pytest.raises(LedgerContentionError):
        CreditsService(db_session).deduct(free_account.id, 5)

    assert len(calls) == 3
    assert _ledger_rows(db_session, free_account.id) == []


def test_lost_swap_then_success(db_session, free_account, monkeypatch):
    original = CreditsService._compare_and_swap
    attempts = []

    def lose_once(self, account, delta):
        attempts.append(delta)
        if len(attempts) == 1:
            return None
        return original(self, account, delta)

    monkeypatch.setattr(CreditsService, "_compare_and_swap", lose_once)
    result = CreditsService(db_session).deduct(free_account.id, 5)

    assert len(attempts) == 2
    assert result.remaining == 95


def test_idempotency_key_reused_for_other_operation_conflicts(db_session, free_account):
    service = CreditsService(db_session)
    first = service.add(free_account.id, 50, "purchase", idempotency_key="evt-1")

    try:
        service.deduct(free_account.id, 10, idempotency_key="evt-1")
        assert False, "expected IdempotencyConflictError"
    except IdempotencyConflictError as exc:
        assert exc.code == "IDEMPOTENCY_CONFLICT"
        assert exc.status_code == 409
        assert exc.details["transaction_id"] == first.transaction_id

    assert BalanceStore(db_session).get_balance(free_account.id).remaining == 150
    assert len(_ledger_rows(db_session, free_account.id)) == 1


def test_idempotency_key_reused_with_other_amount_conflicts(db_session, free_account):
    service = CreditsService(db_session)
    service.deduct(free_account.id, 10, idempotency_key="run-1")

    with pytest.raises(IdempotencyConflictError):
        service.deduct(free_account.id, 20, idempotency_key="run-1")

    assert BalanceStore(db_session).get_balance(free_account.id).remaining == 90
    assert [r.amount for r in _ledger_rows(db_session, free_account.id)] == [-10]


def test_free_executions_use_up_daily_allowance(db_session, accounts):
    maker = accounts[Tier.MAKER]
    service = CreditsService(db_session)

    remaining = [service.record_free_execution(maker.id, f"exec-{i}").free_executions_remaining for i in range(5)]
    assert remaining == [4, 3, 2, 1, 0]

    try:
        service.record_free_execution(maker.id, "exec-5")
        assert False, "expected FreeExecutionsExhaustedError"
    except FreeExecutionsExhaustedError as exc:
        assert exc.status_code == 409
        assert exc.code == "FREE_EXECUTIONS_EXHAUSTED"
        assert exc.details["free_executions_per_day"] == 5

    rows = _ledger_rows(db_session, maker.id)
    assert len(rows) == 5
    assert {r.amount for r in rows} == {0}
    assert {r.reference_type for r in rows} == {"workflow_execution"}
    assert service.workflow_executions_today(maker.id) == 5
    assert BalanceStore(db_session).get_balance(maker.id).remaining == 250
    assert service.reconcile(maker.id).balanced is True


def test_free_tier_has_no_free_executions(db_session, free_account):
    with pytest.raises(FreeExecutionsExhaustedError):
        CreditsService(db_session).record_free_execution(free_account.id)
    assert _ledger_rows(db_session, free_account.id) == []


def test_charged_runs_count_against_free_allowance(db_session, accounts):
    maker = accounts[Tier.MAKER]
    service = CreditsService(db_session)
    service.deduct(maker.id, 6, reference_type="workflow_execution", reference_id="exec-paid")
    service.deduct(maker.id, 3, reference_type="ai_generation")

    assert service.workflow_executions_today(maker.id) == 1
    assert service.record_free_execution(maker.id).free_executions_remaining == 3


def test_free_execution_replay(db_session, accounts):
    maker = accounts[Tier.MAKER]
    service = CreditsService(db_session)
    first = service.record_free_execution(maker.id, "exec-1", idempotency_key="free-1")
    again = service.record_free_execution(maker.id, "exec-1", idempotency_key="free-1")

    assert again.replayed is True
    assert again.transaction_id == first.transaction_id
    assert again.free_executions_remaining == 4
    assert len(_ledger_rows(db_session, maker.id)) == 1
