from fastapi import Depends, Header, HTTPException, status
from typing import Optional
import logging

from dependencies import get_account_service
from models import Account
from services.account_service import AccountService

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required"
        )
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization format"
        )
    return authorization[7:]


async def get_current_account(
    authorization: Optional[str] = Header(None),
    account_service: AccountService = Depends(get_account_service),
) -> Account:
    """Require a valid bearer token and return the (freshly read) account."""
    token = _bearer_token(authorization)
    account = await account_service.get_current_account(token)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return account
