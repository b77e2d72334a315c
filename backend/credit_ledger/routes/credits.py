from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from credit_ledger.core.database import get_db
from credit_ledger.dependencies.admin import require_admin_account
from credit_ledger.dependencies.auth import get_current_account
from credit_ledger.dependencies.internal import require_internal_token
from credit_ledger.dependencies.request_id import get_correlation_id
from credit_ledger.models.account import Account
from credit_ledger.models.transaction import (
    WORKFLOW_EXECUTION_REFERENCE,
    CreditTransaction,
    TransactionType,
)
from credit_ledger.schemas.common import Envelope, Pagination
from credit_ledger.schemas.credits import (
    ActivityStatsOut,
    AddCreditsIn,
    AddCreditsOut,
    AdjustCreditsIn,
    AdjustCreditsOut,
    CreditBalanceOut,
    CreditCheckOut,
    CreditTransactionOut,
    DailyUsageOut,
    DeductCreditsIn,
    DeductCreditsOut,
    FreeExecutionIn,
    FreeExecutionOut,
    ReconciliationOut,
    TransactionHistoryOut,
    TypeUsageOut,
    UnifiedCreditsOut,
    UsageOut,
    UsagePeriodOut,
    UsageTotalsOut,
    WorkflowConfigOut,
    WorkflowEstimateIn,
    WorkflowEstimateOut,
    WorkflowStatsOut,
)
from credit_ledger.services.analytics import UsageAnalytics
from credit_ledger.services.balances import BalanceStore
from credit_ledger.services.credits import CreditsService, TransactionPage
from credit_ledger.services.estimator import (
    MAX_CREDITS_PER_EXECUTION,
    PremiumNodeUsage,
    estimate_workflow_cost,
    estimate_workflow_cost_range,
    free_executions_remaining,
    is_execution_free,
)
from credit_ledger.services.tiers import policy_for

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


def _transaction_out(entry: CreditTransaction) -> CreditTransactionOut:
    return CreditTransactionOut(
        id=entry.id,
        account_id=entry.account_id,
        amount=entry.amount,
        type=entry.type,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        reason=entry.reason,
        notes=entry.notes,
        balance_after=entry.balance_after,
        created_at=entry.created_at,
    )


def _history_out(page: TransactionPage) -> TransactionHistoryOut:
    return TransactionHistoryOut(
        transactions=[_transaction_out(entry) for entry in page.transactions],
        pagination=Pagination(
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            has_more=page.has_more,
        ),
    )


@router.get("", response_model=Envelope[CreditBalanceOut])
@router.get("/", response_model=Envelope[CreditBalanceOut], include_in_schema=False)
def get_credit_balance(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[CreditBalanceOut]:
    snapshot = BalanceStore(db).get_balance(account.id)
    return Envelope(
        data=CreditBalanceOut(
            account_id=snapshot.account_id,
            remaining=snapshot.remaining,
            tier=snapshot.tier.value,
            daily_limit=snapshot.daily_limit,
            used_today=snapshot.used_today,
            daily_remaining=snapshot.daily_remaining,
        )
    )


@router.get("/check", response_model=Envelope[CreditCheckOut])
def check_credits(
    amount: int = Query(..., ge=0),
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[CreditCheckOut]:
    result = BalanceStore(db).check_sufficient(account.id, amount)
    return Envelope(
        data=CreditCheckOut(
            available=result.available,
            remaining=result.remaining,
            required=result.required,
            deficit=result.deficit,
        )
    )


@router.post(
    "/deduct",
    response_model=Envelope[DeductCreditsOut],
    dependencies=[Depends(require_internal_token)],
)
def deduct_credits(
    payload: DeductCreditsIn,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
) -> Envelope[DeductCreditsOut]:
    result = CreditsService(db).deduct(
        payload.user_id,
        payload.amount,
        payload.reason,
        payload.reference_type,
        payload.reference_id,
        type=payload.type,
        idempotency_key=payload.idempotency_key,
        correlation_id=correlation_id,
    )
    return Envelope(
        data=DeductCreditsOut(
            deducted=result.deducted,
            remaining=result.remaining,
            transaction_id=result.transaction_id,
        )
    )


@router.post(
    "/add",
    response_model=Envelope[AddCreditsOut],
    dependencies=[Depends(require_internal_token)],
)
def add_credits(
    payload: AddCreditsIn,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
) -> Envelope[AddCreditsOut]:
    result = CreditsService(db).add(
        payload.user_id,
        payload.amount,
        payload.type,
        payload.reason,
        payload.reference_id,
        reference_type=payload.reference_type,
        idempotency_key=payload.idempotency_key,
        correlation_id=correlation_id,
    )
    return Envelope(
        data=AddCreditsOut(
            added=result.added,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
        )
    )


@router.get("/history", response_model=Envelope[TransactionHistoryOut])
def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: TransactionType | None = Query(None),
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[TransactionHistoryOut]:
    page = CreditsService(db).list_transactions(account.id, limit=limit, offset=offset, type=type)
    return Envelope(data=_history_out(page))


@router.get("/usage", response_model=Envelope[UsageOut])
def get_credit_usage(
    days: int = Query(30, ge=1),
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[UsageOut]:
    summary = UsageAnalytics(db).usage_summary(account.id, days)
    return Envelope(
        data=UsageOut(
            period=UsagePeriodOut(days=summary.period.days, start=summary.period.start, end=summary.period.end),
            summary=UsageTotalsOut(
                total_used=summary.total_used,
                total_added=summary.total_added,
                net=summary.net,
            ),
            daily=[
                DailyUsageOut(date=row.date, credits_used=row.credits_used, credits_added=row.credits_added)
                for row in summary.daily
            ],
            by_type=[TypeUsageOut(type=row.type, total=row.total, count=row.count) for row in summary.by_type],
        )
    )


@router.get("/workflow/config", response_model=Envelope[WorkflowConfigOut])
def get_workflow_config(account: Account = Depends(get_current_account)) -> Envelope[WorkflowConfigOut]:
    policy = policy_for(account.subscription_tier)
    return Envelope(
        data=WorkflowConfigOut(
            tier=policy.tier.value,
            credit_multiplier=float(policy.multiplier),
            free_executions_per_day=policy.free_executions_per_day,
            workflows_enabled=policy.workflows_enabled,
            max_credits_per_execution=MAX_CREDITS_PER_EXECUTION,
            premium_nodes=dict(policy.premium_node_costs),
        )
    )


@router.post("/workflow/estimate", response_model=Envelope[WorkflowEstimateOut])
def estimate_workflow(
    payload: WorkflowEstimateIn,
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[WorkflowEstimateOut]:
    estimate = estimate_workflow_cost(
        node_count=payload.node_count,
        estimated_duration_seconds=payload.estimated_duration,
        premium_nodes=[PremiumNodeUsage(type=node.type, count=node.count) for node in payload.premium_nodes],
        tier=account.subscription_tier,
    )
    executions_today = CreditsService(db).workflow_executions_today(account.id)
    free_left = free_executions_remaining(estimate.tier, executions_today)
    remaining = int(account.credits_remaining)
    node_types = payload.node_types or [node.type for node in payload.premium_nodes for _ in range(node.count)]
    cost_range = estimate_workflow_cost_range(payload.node_count, node_types, estimate.tier, remaining)
    return Envelope(
        data=WorkflowEstimateOut(
            tier=estimate.tier.value,
            base_cost=estimate.base_cost,
            duration_cost=estimate.duration_cost,
            complexity_cost=estimate.complexity_cost,
            premium_cost=estimate.premium_cost,
            tier_multiplier=float(estimate.tier_multiplier),
            estimated_total=estimate.estimated_total,
            capped=estimate.capped,
            breakdown=estimate.breakdown,
            is_free_execution=is_execution_free(estimate.tier, executions_today),
            free_executions_remaining=free_left,
            can_afford=free_left > 0 or remaining >= estimate.estimated_total,
            credits_remaining=remaining,
            estimated_min_cost=cost_range.estimated_min_cost,
            estimated_max_cost=cost_range.estimated_max_cost,
            range_breakdown=cost_range.breakdown,
        )
    )


@router.post(
    "/workflow/free-execution",
    response_model=Envelope[FreeExecutionOut],
    dependencies=[Depends(require_internal_token)],
)
def record_free_execution(
    payload: FreeExecutionIn,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
) -> Envelope[FreeExecutionOut]:
    result = CreditsService(db).record_free_execution(
        payload.user_id,
        payload.reference_id,
        idempotency_key=payload.idempotency_key,
        correlation_id=correlation_id,
    )
    return Envelope(
        data=FreeExecutionOut(
            transaction_id=result.transaction_id,
            free_executions_remaining=result.free_executions_remaining,
        )
    )


@router.get("/workflow/history", response_model=Envelope[TransactionHistoryOut])
def get_workflow_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[TransactionHistoryOut]:
    page = CreditsService(db).list_transactions(
        account.id,
        limit=limit,
        offset=offset,
        reference_type=WORKFLOW_EXECUTION_REFERENCE,
    )
    return Envelope(data=_history_out(page))


@router.get("/unified", response_model=Envelope[UnifiedCreditsOut])
def get_unified_overview(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[UnifiedCreditsOut]:
    snapshot = BalanceStore(db).get_balance(account.id)
    analytics = UsageAnalytics(db)
    ai = analytics.ai_stats(account.id)
    workflows = analytics.workflow_stats(account.id)
    policy = policy_for(snapshot.tier)
    return Envelope(
        data=UnifiedCreditsOut(
            account_id=snapshot.account_id,
            credits_remaining=snapshot.remaining,
            tier=snapshot.tier.value,
            daily_limit=snapshot.daily_limit,
            used_today=snapshot.used_today,
            ai=ActivityStatsOut(
                transactions_today=ai.transactions_today,
                credits_used_today=ai.credits_used_today,
                total_transactions=ai.total_transactions,
                total_credits_used=ai.total_credits_used,
            ),
            workflows=WorkflowStatsOut(
                transactions_today=workflows.transactions_today,
                credits_used_today=workflows.credits_used_today,
                total_transactions=workflows.total_transactions,
                total_credits_used=workflows.total_credits_used,
                free_executions_per_day=workflows.free_executions_per_day,
                free_executions_remaining=workflows.free_executions_remaining,
                credit_multiplier=float(policy.multiplier),
            ),
        )
    )


@router.get("/reconcile", response_model=Envelope[ReconciliationOut])
def reconcile_ledger(
    db: Session = Depends(get_db),
    account: Account = Depends(get_current_account),
) -> Envelope[ReconciliationOut]:
    result = CreditsService(db).reconcile(account.id)
    return Envelope(
        data=ReconciliationOut(
            account_id=result.account_id,
            ledger_total=result.ledger_total,
            initial_credits=result.initial_credits,
            credits_remaining=result.credits_remaining,
            balanced=result.balanced,
        )
    )


@router.post("/{account_id}/adjust", response_model=Envelope[AdjustCreditsOut])
def adjust_credits(
    account_id: str,
    payload: AdjustCreditsIn,
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin_account),
    correlation_id: str = Depends(get_correlation_id),
) -> Envelope[AdjustCreditsOut]:
    result = CreditsService(db).adjust(
        account_id,
        payload.amount,
        payload.reason,
        payload.notes,
        actor=admin,
        correlation_id=correlation_id,
    )
    return Envelope(
        data=AdjustCreditsOut(
            account_id=account_id,
            adjustment=result.adjustment,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
        )
    )
