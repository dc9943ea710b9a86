import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from config import Settings, get_settings
from schemas import Mentor
from stores import MentorStore

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def authenticate(mentors: MentorStore, email: str, password: str, settings: Settings) -> TokenResponse:
    mentor = mentors.find_by_email(email)
    if not mentor:
        # AUTH404: Email was not found
        raise HTTPException(status_code=401, detail="AUTH404: Invalid credentials")
    if not verify_password(password, mentor.get("password_hash", "")):
        # AUTH400: Password invalid
        raise HTTPException(status_code=401, detail="AUTH400: Invalid credentials")
    token = create_access_token(
        {"sub": str(mentor["_id"]), "email": mentor["email"], "role": mentor.get("role", "mentor")},
        settings,
    )
    logger.info("Mentor %s signed in", mentor["_id"])
    return TokenResponse(access_token=token)


def decode_user(request: Request, settings: Settings) -> Optional[Dict[str, Any]]:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(
    request: Request, settings: Settings = Depends(get_settings)
) -> Optional[Dict[str, Any]]:
    """Return the decoded JWT claims if a valid bearer token is present, else None."""
    return decode_user(request, settings)


def require_roles(*roles: str):
    async def _dep(user: Optional[Dict[str, Any]] = Depends(get_current_user)):
        if user is None:
            raise HTTPException(status_code=401, detail="AUTH401: Not authenticated")
        if roles and user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="AUTH403: Forbidden for role")
        return user
    return _dep


def ensure_admin(mentors: MentorStore, settings: Settings) -> None:
    """Seed the bootstrap admin account when ADMIN_EMAIL/ADMIN_PASSWORD are set."""
    if not settings.admin_email or not settings.admin_password:
        return
    if mentors.find_by_email(settings.admin_email):
        return
    mentors.create(
        Mentor(
            email=settings.admin_email,
            name="Administrator",
            password_hash=hash_password(settings.admin_password),
            role="admin",
        )
    )
    logger.info("Seeded admin account %s", settings.admin_email)
