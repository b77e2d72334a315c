# credit_ledger/models/account.py
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, func

from credit_ledger.core.base import Base


def _new_account_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_account_id)

    email = Column(String(255), unique=True, index=True, nullable=False)
    # free | maker | pro | agency | admin (see services.tiers)
    subscription_tier = Column(String(20), nullable=False, server_default="free")

    # Current balance. Only CreditsService mutates this column, always together with a ledger row.
    credits_remaining = Column(Integer, nullable=False, server_default="0")
    # Starting grant at provisioning time; the ledger reconciles against it.
    initial_credits = Column(Integer, nullable=False, server_default="0")
    # Bumped on every balance write; deductions compare-and-swap on it.
    version = Column(Integer, nullable=False, server_default="0", default=0)

    is_admin = Column(Boolean, nullable=False, server_default="false", default=False)
    # Accounts are archived, never deleted.
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_accounts_credits_non_negative"),
    )
