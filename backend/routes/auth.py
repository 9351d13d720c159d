"""Authentication Routes

Endpoints:
- POST /api/auth/register - Register a new (free) account
- POST /api/auth/login - Login
- GET /api/auth/me - Current account view
- POST /api/auth/verify-email - Complete email verification
- PUT /api/auth/profile - Update name/email
- POST /api/auth/change-password - Change password

Service errors (ValidationError, AuthenticationFailed, ...) are rendered by
the BillingError handler in server.py.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
import logging
import os

from dependencies import get_account_service
from middleware import get_current_account
from models import Account, AccountCreate, AccountLogin, AccountResponse, ProfileUpdate, TokenResponse
from services.account_service import AccountService, issue_token, to_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)


def _expose_verification_token() -> bool:
    # no mail delivery in this service; dev/test can read the token from the response
    return os.getenv("EXPOSE_VERIFICATION_TOKEN", "false").lower() == "true"


@router.post("/register", response_model=TokenResponse)
async def register(data: AccountCreate, account_service: AccountService = Depends(get_account_service)):
    """Register a new account on the free tier (2 essays)."""
    account, verification_token = await account_service.register(data)
    return TokenResponse(
        access_token=issue_token(account),
        account=to_response(account),
        verification_token=verification_token if _expose_verification_token() else None,
    )


@router.post("/login", response_model=TokenResponse)
async def login(data: AccountLogin, account_service: AccountService = Depends(get_account_service)):
    account = await account_service.login(data)
    return TokenResponse(access_token=issue_token(account), account=to_response(account))


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)):
    """Current account, with pending/confirmed subscription state."""
    return to_response(account)


@router.post("/verify-email", response_model=AccountResponse)
async def verify_email(body: VerifyEmailRequest, account_service: AccountService = Depends(get_account_service)):
    account = await account_service.verify_email(body.token)
    return to_response(account)


@router.put("/profile", response_model=AccountResponse)
async def update_profile(
    data: ProfileUpdate,
    account: Account = Depends(get_current_account),
    account_service: AccountService = Depends(get_account_service),
):
    updated = await account_service.update_profile(account.account_id, data)
    return to_response(updated)


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
    account_service: AccountService = Depends(get_account_service),
):
    await account_service.change_password(
        account_id=account.account_id,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    return {"message": "Password changed successfully"}
