# credit_ledger/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from credit_ledger.core.security import verify_token_purpose
from credit_ledger.core.database import get_db
from credit_ledger.models.account import Account

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_account(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Account:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp + purpose
      - account exists + is_active
    Returns:
      - Account SQLAlchemy model
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        payload = verify_token_purpose(creds.credentials, expected_purpose="access")
    except ValueError:
        raise _unauthorized("Invalid or expired token")
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    account_id = str(payload.get("sub") or "").strip()
    if not account_id:
        raise _unauthorized("Invalid or expired token")

    account = db.get(Account, account_id)
    if not account:
        raise _unauthorized("User not found")
    if not account.is_active:
        raise _unauthorized("Account is archived")

    return account
