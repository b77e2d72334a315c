from __future__ import annotations

from fastapi import Depends

from credit_ledger.dependencies.auth import get_current_account
from credit_ledger.models.account import Account
from credit_ledger.services.credits import is_admin_account
from credit_ledger.services.errors import ForbiddenError


def require_admin_account(current_account: Account = Depends(get_current_account)) -> Account:
    """
    Ensure the authenticated account holds the admin capability.
    """
    if not is_admin_account(current_account):
        raise ForbiddenError("Admin access required")
    return current_account
