from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from credit_ledger.core.config import settings
from credit_ledger.models.account import Account
from credit_ledger.models.transaction import (
    WORKFLOW_EXECUTION_REFERENCE,
    CreditTransaction,
    TransactionType,
)
from credit_ledger.services.balances import as_utc, utc_day_start, utc_now
from credit_ledger.services.errors import (
    AccountNotFoundError,
    ForbiddenError,
    FreeExecutionsExhaustedError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerContentionError,
)
from credit_ledger.services.estimator import free_executions_remaining
from credit_ledger.services.tiers import Tier, policy_for

logger = logging.getLogger(__name__)

CREDIT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND})


@dataclass
class DeductionResult:
    deducted: int
    remaining: int
    transaction_id: int
    replayed: bool = False


@dataclass
class CreditResult:
    added: int
    new_balance: int
    transaction_id: int
    replayed: bool = False


@dataclass
class FreeExecutionResult:
    transaction_id: int
    free_executions_remaining: int
    replayed: bool = False


@dataclass
class AdjustmentResult:
    adjustment: int
    new_balance: int
    transaction_id: int


@dataclass
class TransactionPage:
    transactions: list[CreditTransaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.transactions) < self.total


@dataclass
class ReconciliationResult:
    account_id: str
    ledger_total: int
    initial_credits: int
    credits_remaining: int

    @property
    def balanced(self) -> bool:
        return self.ledger_total == self.credits_remaining - self.initial_credits


def _require_int(value: object, *, name: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{name} must be an integer", amount=value)
    return value


def _clean(value: str | None) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _normalize_type(value: TransactionType | str) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidAmountError(f"Unknown transaction type: {value!r}", type=str(value)) from None


def is_admin_account(account: Account | None) -> bool:
    if account is None:
        return False
    return bool(account.is_admin) or account.subscription_tier == Tier.ADMIN.value


class CreditsService:
    """
    Every balance change goes through here. A change is one database
    transaction: lock the account row, compare-and-swap the balance on
    `version`, append the ledger row, commit. A lost swap rolls back and
    retries up to LEDGER_MAX_RETRIES times.
    """

    MAX_PAGE_SIZE = 200

    def __init__(self, db: Session):
        self.db = db

    # --- Reads ---

    def _get_account(self, account_id: str) -> Account:
        account = self.db.get(Account, account_id, populate_existing=True) if account_id else None
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def list_transactions(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        type: TransactionType | str | None = None,
        reference_type: str | None = None,
    ) -> TransactionPage:
        self._get_account(account_id)
        max_page = min(self.MAX_PAGE_SIZE, settings.HISTORY_MAX_PAGE_SIZE)
        normalized_limit = max(1, min(int(limit or 50), max_page))
        normalized_offset = max(0, int(offset or 0))

        filters = [CreditTransaction.account_id == account_id]
        if type is not None:
            filters.append(CreditTransaction.type == _normalize_type(type).value)
        if reference_type:
            filters.append(CreditTransaction.reference_type == reference_type)

        total = self.db.execute(
            select(func.count(CreditTransaction.id)).where(*filters)
        ).scalar_one()
        rows = (
            self.db.execute(
                select(CreditTransaction)
                .where(*filters)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .offset(normalized_offset)
                .limit(normalized_limit)
            )
            .scalars()
            .all()
        )
        return TransactionPage(
            transactions=list(rows),
            total=int(total),
            limit=normalized_limit,
            offset=normalized_offset,
        )

    def reconcile(self, account_id: str) -> ReconciliationResult:
        account = self._get_account(account_id)
        ledger_total = self.db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.account_id == account_id
            )
        ).scalar_one()
        return ReconciliationResult(
            account_id=account.id,
            ledger_total=int(ledger_total or 0),
            initial_credits=int(account.initial_credits),
            credits_remaining=int(account.credits_remaining),
        )

    def workflow_executions_today(self, account_id: str, *, now: datetime | None = None) -> int:
        """Charged and free workflow runs in the current UTC day."""
        start = utc_day_start(as_utc(now or utc_now()).date())
        count = self.db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.reference_type == WORKFLOW_EXECUTION_REFERENCE,
                CreditTransaction.amount <= 0,
                CreditTransaction.created_at >= start,
                CreditTransaction.created_at < start + timedelta(days=1),
            )
        ).scalar_one()
        return int(count)

    # --- Mutations ---

    def _lock_account(self, account_id: str) -> Account:
        account = (
            self.db.execute(
                select(Account)
                .where(Account.id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )
        if account is None:
            raise AccountNotFoundError(str(account_id))
        if not account.is_active:
            raise AccountNotFoundError(account.id, message="Account is archived")
        return account

    def _find_by_idempotency(self, account_id: str, key: str) -> CreditTransaction | None:
        return (
            self.db.execute(
                select(CreditTransaction).where(
                    CreditTransaction.account_id == account_id,
                    CreditTransaction.idempotency_key == key,
                )
            )
            .scalars()
            .first()
        )

    def _compare_and_swap(self, account: Account, delta: int) -> int | None:
        result = self.db.execute(
            update(Account)
            .where(
                Account.id == account.id,
                Account.version == account.version,
                Account.credits_remaining + delta >= 0,
            )
            .values(
                credits_remaining=Account.credits_remaining + delta,
                version=Account.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return int(account.credits_remaining) + delta

    def _apply(
        self,
        account_id: str,
        *,
        delta: int,
        txn_type: TransactionType,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        guard: Callable[[Account], None] | None = None,
    ) -> tuple[CreditTransaction, bool]:
        """
        Apply `delta` atomically. Returns (ledger row, replayed) where replayed
        is True when `idempotency_key` matched an earlier row and nothing changed.
        A key reused for a different type or amount raises IdempotencyConflictError.
        `guard` runs against the locked account before the balance moves.
        """
        max_attempts = max(1, int(settings.LEDGER_MAX_RETRIES))
        for attempt in range(1, max_attempts + 1):
            if idempotency_key:
                existing = self._find_by_idempotency(account_id, idempotency_key)
                if existing is not None:
                    if existing.type != txn_type.value or existing.amount != delta:
                        logger.warning(
                            "Idempotency key %s reused for a different operation on account %s",
                            idempotency_key,
                            account_id,
                            extra={"account_id": account_id, "correlation_id": correlation_id},
                        )
                        raise IdempotencyConflictError(
                            "Idempotency key was already used for a different operation",
                            idempotency_key=idempotency_key,
                            transaction_id=existing.id,
                        )
                    logger.info(
                        "Idempotent replay for account %s key=%s",
                        account_id,
                        idempotency_key,
                        extra={"account_id": account_id, "correlation_id": correlation_id},
                    )
                    return existing, True

            account = self._lock_account(account_id)
            if guard is not None:
                try:
                    guard(account)
                except Exception:
                    self.db.rollback()
                    raise
            remaining = int(account.credits_remaining)
            if remaining + delta < 0:
                self.db.rollback()
                logger.info(
                    "Rejected %s of %s for account %s: remaining=%s",
                    txn_type.value,
                    -delta,
                    account_id,
                    remaining,
                    extra={"account_id": account_id, "correlation_id": correlation_id},
                )
                raise InsufficientCreditsError(required=-delta, remaining=remaining)

            new_balance = self._compare_and_swap(account, delta)
            if new_balance is None:
                self.db.rollback()
                logger.warning(
                    "Balance swap lost for account %s (attempt %s/%s); retrying",
                    account_id,
                    attempt,
                    max_attempts,
                    extra={"account_id": account_id, "correlation_id": correlation_id},
                )
                continue

            entry = CreditTransaction(
                account_id=account_id,
                amount=delta,
                type=txn_type.value,
                reference_type=reference_type,
                reference_id=reference_id,
                reason=reason,
                notes=notes,
                idempotency_key=idempotency_key,
                actor_id=actor_id,
                balance_after=new_balance,
                correlation_id=correlation_id,
            )
            self.db.add(entry)
            try:
                self.db.commit()
            except IntegrityError:
                # Only the idempotency constraint can fire here: a concurrent request with
                # the same key won. Roll back and let the next attempt replay its row.
                self.db.rollback()
                if not idempotency_key:
                    raise
                continue
            self.db.refresh(entry)
            logger.info(
                "Applied %s %+d to account %s; balance=%s",
                txn_type.value,
                delta,
                account_id,
                new_balance,
                extra={
                    "account_id": account_id,
                    "transaction_id": entry.id,
                    "correlation_id": correlation_id,
                },
            )
            return entry, False

        logger.error(
            "Gave up applying %s to account %s after %s attempts",
            txn_type.value,
            account_id,
            max_attempts,
            extra={"account_id": account_id, "correlation_id": correlation_id},
        )
        raise LedgerContentionError(account_id, max_attempts)

    def deduct(
        self,
        account_id: str,
        amount: int,
        reason: str | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        *,
        type: TransactionType | str = TransactionType.GENERATION,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> DeductionResult:
        amount = _require_int(amount)
        if amount <= 0:
            raise InvalidAmountError("amount must be positive", amount=amount)
        txn_type = _normalize_type(type)

        entry, replayed = self._apply(
            account_id,
            delta=-amount,
            txn_type=txn_type,
            reason=_clean(reason) or "Credit deduction",
            reference_type=_clean(reference_type),
            reference_id=_clean(reference_id),
            idempotency_key=_clean(idempotency_key),
            correlation_id=correlation_id,
        )
        return DeductionResult(
            deducted=-entry.amount,
            remaining=entry.balance_after if not replayed else int(self._get_account(account_id).credits_remaining),
            transaction_id=entry.id,
            replayed=replayed,
        )

    def add(
        self,
        account_id: str,
        amount: int,
        type: TransactionType | str = TransactionType.PURCHASE,
        reason: str | None = None,
        reference_id: str | None = None,
        *,
        reference_type: str | None = None,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> CreditResult:
        amount = _require_int(amount)
        if amount <= 0:
            raise InvalidAmountError("amount must be positive", amount=amount)
        txn_type = _normalize_type(type)
        if txn_type not in CREDIT_TYPES:
            raise InvalidAmountError(
                f"Credits cannot be added with type {txn_type.value!r}",
                type=txn_type.value,
            )

        entry, replayed = self._apply(
            account_id,
            delta=amount,
            txn_type=txn_type,
            reason=_clean(reason) or f"Credits added ({txn_type.value})",
            reference_type=_clean(reference_type) or txn_type.value,
            reference_id=_clean(reference_id),
            idempotency_key=_clean(idempotency_key),
            correlation_id=correlation_id,
        )
        return CreditResult(
            added=entry.amount,
            new_balance=entry.balance_after if not replayed else int(self._get_account(account_id).credits_remaining),
            transaction_id=entry.id,
            replayed=replayed,
        )

    def record_free_execution(
        self,
        account_id: str,
        reference_id: str | None = None,
        *,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> FreeExecutionResult:
        """
        Log a workflow run covered by the tier's daily free allowance as a
        zero-amount ledger row, so the allowance is counted from the ledger.
        """

        def _require_allowance(account: Account) -> None:
            policy = policy_for(account.subscription_tier)
            if free_executions_remaining(policy.tier, self.workflow_executions_today(account.id)) <= 0:
                raise FreeExecutionsExhaustedError(
                    tier=policy.tier.value,
                    free_executions_per_day=policy.free_executions_per_day,
                )

        entry, replayed = self._apply(
            account_id,
            delta=0,
            txn_type=TransactionType.GENERATION,
            reason="Free workflow execution",
            reference_type=WORKFLOW_EXECUTION_REFERENCE,
            reference_id=_clean(reference_id),
            idempotency_key=_clean(idempotency_key),
            correlation_id=correlation_id,
            guard=_require_allowance,
        )
        tier = self._get_account(account_id).subscription_tier
        return FreeExecutionResult(
            transaction_id=entry.id,
            free_executions_remaining=free_executions_remaining(tier, self.workflow_executions_today(account_id)),
            replayed=replayed,
        )

    def adjust(
        self,
        account_id: str,
        signed_amount: int,
        reason: str | None = None,
        notes: str | None = None,
        *,
        actor: Account | None,
        correlation_id: str | None = None,
    ) -> AdjustmentResult:
        if not is_admin_account(actor):
            logger.warning(
                "Non-admin %s attempted credit adjustment on account %s",
                getattr(actor, "id", None),
                account_id,
                extra={"account_id": account_id, "correlation_id": correlation_id},
            )
            raise ForbiddenError("Admin access required")

        signed_amount = _require_int(signed_amount)
        if signed_amount == 0:
            raise InvalidAmountError("adjustment amount must be non-zero", amount=signed_amount)

        entry, _ = self._apply(
            account_id,
            delta=signed_amount,
            txn_type=TransactionType.ADMIN_ADJUSTMENT,
            reason=_clean(reason) or "Admin adjustment",
            reference_type="admin_adjustment",
            reference_id=actor.id,
            notes=_clean(notes),
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
        return AdjustmentResult(
            adjustment=entry.amount,
            new_balance=entry.balance_after,
            transaction_id=entry.id,
        )
