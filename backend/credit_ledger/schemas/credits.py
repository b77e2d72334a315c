from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from credit_ledger.models.transaction import TransactionType
from credit_ledger.schemas.common import ApiModel, Pagination


# ----------------------------
# Requests (snake_case, as sent by internal services)
# ----------------------------
class DeductCreditsIn(BaseModel):
    user_id: str
    amount: int
    reason: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    type: TransactionType = TransactionType.GENERATION
    idempotency_key: str | None = None

    @field_validator("user_id")
    @staticmethod
    def _validate_user_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized


class AddCreditsIn(BaseModel):
    user_id: str
    amount: int
    type: TransactionType = TransactionType.PURCHASE
    reason: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None

    @field_validator("user_id")
    @staticmethod
    def _validate_user_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized


class AdjustCreditsIn(BaseModel):
    amount: int
    reason: str
    notes: str | None = None

    @field_validator("reason")
    @staticmethod
    def _validate_reason(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("reason is required")
        return normalized


class PremiumNodeIn(ApiModel):
    type: str = Field(..., min_length=1)
    count: int = Field(1, ge=0)


class WorkflowEstimateIn(ApiModel):
    node_count: int = Field(..., ge=0)
    estimated_duration: int = Field(0, ge=0, description="Expected run time in seconds")
    premium_nodes: list[PremiumNodeIn] = Field(default_factory=list)
    node_types: list[str] = Field(
        default_factory=list,
        description="Node types in the flow; used for the min/max range. Defaults to the premium nodes.",
    )


class FreeExecutionIn(BaseModel):
    user_id: str
    reference_id: str | None = None
    idempotency_key: str | None = None

    @field_validator("user_id")
    @staticmethod
    def _validate_user_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("user_id is required")
        return normalized


# ----------------------------
# Responses (camelCase)
# ----------------------------
class CreditBalanceOut(ApiModel):
    account_id: str
    remaining: int
    tier: str
    daily_limit: int
    used_today: int
    daily_remaining: int


class CreditCheckOut(ApiModel):
    available: bool
    remaining: int
    required: int
    deficit: int


class DeductCreditsOut(ApiModel):
    deducted: int
    remaining: int
    transaction_id: int


class AddCreditsOut(ApiModel):
    added: int
    new_balance: int
    transaction_id: int


class AdjustCreditsOut(ApiModel):
    account_id: str
    adjustment: int
    new_balance: int
    transaction_id: int


class CreditTransactionOut(ApiModel):
    id: int
    account_id: str
    amount: int
    type: str
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str
    notes: str | None = None
    balance_after: int
    created_at: datetime


class TransactionHistoryOut(ApiModel):
    transactions: list[CreditTransactionOut]
    pagination: Pagination


class UsagePeriodOut(ApiModel):
    days: int
    start: date
    end: date


class UsageTotalsOut(ApiModel):
    total_used: int
    total_added: int
    net: int


class DailyUsageOut(ApiModel):
    date: date
    credits_used: int
    credits_added: int


class TypeUsageOut(ApiModel):
    type: str
    total: int
    count: int


class UsageOut(ApiModel):
    period: UsagePeriodOut
    summary: UsageTotalsOut
    daily: list[DailyUsageOut]
    by_type: list[TypeUsageOut]


class WorkflowConfigOut(ApiModel):
    tier: str
    credit_multiplier: float
    free_executions_per_day: int
    workflows_enabled: bool
    max_credits_per_execution: int
    premium_nodes: dict[str, int]


class WorkflowEstimateOut(ApiModel):
    tier: str
    base_cost: int
    duration_cost: int
    complexity_cost: int
    premium_cost: int
    tier_multiplier: float
    estimated_total: int
    capped: bool
    breakdown: str
    is_free_execution: bool
    free_executions_remaining: int
    can_afford: bool
    credits_remaining: int
    estimated_min_cost: int
    estimated_max_cost: int
    range_breakdown: str


class FreeExecutionOut(ApiModel):
    transaction_id: int
    free_executions_remaining: int


class ActivityStatsOut(ApiModel):
    transactions_today: int
    credits_used_today: int
    total_transactions: int
    total_credits_used: int


class WorkflowStatsOut(ActivityStatsOut):
    free_executions_per_day: int
    free_executions_remaining: int
    credit_multiplier: float


class UnifiedCreditsOut(ApiModel):
    account_id: str
    credits_remaining: int
    tier: str
    daily_limit: int
    used_today: int
    ai: ActivityStatsOut
    workflows: WorkflowStatsOut


class ReconciliationOut(ApiModel):
    account_id: str
    ledger_total: int
    initial_credits: int
    credits_remaining: int
    balanced: bool
