"""Credentials for PhD Writer Pro accounts.

Passwords are stored as bcrypt hashes. Sessions are HS256 bearer tokens
scoped to the ``phd-writer-pro`` audience and signed with JWT_SECRET, which
has no built-in default: a deployment without it refuses to start.
"""
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional
import os

from services.errors import ConfigurationError, ValidationError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_ALGORITHM = "HS256"
# tokens minted by other services sharing the secret carry a different audience
TOKEN_AUDIENCE = "phd-writer-pro"

PASSWORD_RULES = (
    (lambda p: len(p) >= 8, "Password must be at least 8 characters"),
    (lambda p: any(c.isupper() for c in p), "Password must contain at least one uppercase letter"),
    (lambda p: any(c.islower() for c in p), "Password must contain at least one lowercase letter"),
    (lambda p: any(c.isdigit() for c in p), "Password must contain at least one number"),
)


def signing_secret() -> str:
    secret = (os.getenv("JWT_SECRET") or "").strip()
    if not secret:
        raise ConfigurationError(
            "JWT_SECRET is not set; session tokens cannot be signed or checked",
            error_code="AUTH_NOT_CONFIGURED",
        )
    return secret


def session_lifetime() -> timedelta:
    return timedelta(hours=int(os.getenv("JWT_EXPIRATION_HOURS", "24")))


def check_auth_configuration() -> None:
    """Startup check: fail fast instead of signing with a guessable secret."""
    signing_secret()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def require_strong_password(password: str) -> None:
    """Raise ValidationError naming the first rule the password breaks."""
    for rule, message in PASSWORD_RULES:
        if not rule(password):
            raise ValidationError(message)


def issue_session_token(account_id: str, email: str, lifetime: Optional[timedelta] = None) -> str:
    """Signed bearer token identifying one account."""
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": account_id,
        "email": email,
        "aud": TOKEN_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + (lifetime or session_lifetime()),
    }
    return jwt.encode(claims, signing_secret(), algorithm=TOKEN_ALGORITHM)


def read_session_token(token: str) -> Optional[str]:
    """Account id from a valid session token; None for anything else."""
    secret = signing_secret()
    try:
        claims = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], audience=TOKEN_AUDIENCE)
    except JWTError:
        return None
    return claims.get("sub") or None
