from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from credit_ledger.core.base import Base
from credit_ledger.services.errors import LedgerImmutableError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    GENERATION = "generation"
    PURCHASE = "purchase"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REFUND = "refund"


WORKFLOW_EXECUTION_REFERENCE = "workflow_execution"


class CreditTransaction(Base):
    """
    One row per balance mutation. Rows are inserted, never updated or deleted.
    """

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(
        String(36),
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )
    # Signed: negative = deduction, positive = credit/adjustment.
    amount = Column(Integer, nullable=False)
    type = Column(String(32), nullable=False)
    reference_type = Column(String(64), nullable=True, index=True)
    reference_id = Column(String(255), nullable=True)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(255), nullable=True)
    # Admin who performed an adjustment.
    actor_id = Column(String(36), nullable=True)
    balance_after = Column(Integer, nullable=False)
    correlation_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    account = relationship("Account", backref="credit_transactions")

    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_transactions_account_idempotency"),
        Index("ix_credit_transactions_account_id_created_at", "account_id", "created_at"),
    )


@event.listens_for(CreditTransaction, "before_update")
def _reject_update(mapper, connection, target):  # noqa: ARG001
    raise LedgerImmutableError("Ledger transactions are append-only", transaction_id=target.id)


@event.listens_for(CreditTransaction, "before_delete")
def _reject_delete(mapper, connection, target):  # noqa: ARG001
    raise LedgerImmutableError("Ledger transactions are append-only", transaction_id=target.id)
