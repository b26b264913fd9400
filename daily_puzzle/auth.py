"""Guest and registered accounts with opaque session tokens."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .const import SESSION_COOKIE
from .database import get_db
from .dates import utc_now
from .errors import UniqueConstraintError, ValidationError
from .models import User
from .storage import UserStatsStore, UserStore

_LOGGER = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260000
MIN_PASSWORD_LENGTH = 8
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,30}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthenticationError(Exception):
    """Bad credentials or an unusable session."""


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """PBKDF2-SHA256 hash as `pbkdf2_sha256$<iterations>$<salt>$<hash>`."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str | None) -> bool:
    if not encoded:
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        iterations = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return hmac.compare_digest(digest.hex(), expected)


def new_token() -> str:
    return secrets.token_urlsafe(32)


def validate_credentials(username: str, email: str, password: str) -> None:
    if not _USERNAME_RE.match(username or ""):
        raise ValidationError("Username must be 3-30 letters, digits, '_', '.' or '-'", "username")
    if not _EMAIL_RE.match(email or ""):
        raise ValidationError("Invalid email address", "email")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", "password")


class AccountService:
    """Creates, authenticates and converts user accounts."""

    def __init__(self, db: AsyncSession) -> None:
        self.users = UserStore(db)
        self.stats = UserStatsStore(db)

    async def _ensure_available(self, username: str, email: str) -> None:
        if await self.users.find_by_email(email):
            raise UniqueConstraintError("email", email)
        if await self.users.find_by_username(username):
            raise UniqueConstraintError("username", username)

    async def create_guest(self, ip_address: str | None = None, device_id: str | None = None) -> User:
        """New guest with its own guest and session tokens and starter stats."""
        guest_token = new_token()
        user_id = str(uuid.uuid4())
        username = f"guest_{user_id[:8]}"
        user = User(
            id=user_id,
            username=username,
            email=f"{username}@guest.local",
            password_hash=None,
            is_guest=True,
            guest_token=guest_token,
            session_token=new_token(),
            ip_address=ip_address,
            device_id=device_id,
            last_login=utc_now(),
        )
        await self.users.save(user)
        await self.stats.create_initial(user.id)
        _LOGGER.info("Created guest user %s", user.id)
        return user

    async def resume_guest(self, guest_token: str) -> User | None:
        """Guest matching a stored guest token, with a fresh session."""
        user = await self.users.find_by_guest_token(guest_token)
        if user is None:
            return None
        user.session_token = new_token()
        user.last_login = utc_now()
        return await self.users.save(user)

    async def signup(self, username: str, email: str, password: str) -> User:
        """Register a new account.

        Raises:
            ValidationError: malformed username, email or password
            UniqueConstraintError: username or email already taken
        """
        email = email.strip().lower()
        validate_credentials(username, email, password)
        await self._ensure_available(username, email)

        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=hash_password(password),
            is_guest=False,
            session_token=new_token(),
            last_login=utc_now(),
        )
        await self.users.save(user)
        await self.stats.create_initial(user.id)
        _LOGGER.info("Registered user %s", user.id)
        return user

    async def login(self, identifier: str, password: str) -> User:
        """Authenticate by email or username and issue a new session token."""
        identifier = (identifier or "").strip()
        user = await self.users.find_by_email(identifier) or await self.users.find_by_username(identifier)
        if user is None or user.is_guest or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid credentials")

        user.session_token = new_token()
        user.last_login = utc_now()
        return await self.users.save(user)

    async def convert_guest(self, user: User, username: str, email: str, password: str) -> User:
        """Attach credentials to a guest. One-way: the guest token is retired.

        Stats and attempts keep the same user id, so progress carries over.
        """
        if not user.is_guest:
            raise ValidationError("Only guest accounts can be converted", "user")

        email = email.strip().lower()
        validate_credentials(username, email, password)
        await self._ensure_available(username, email)

        user.username = username
        user.email = email
        user.password_hash = hash_password(password)
        user.is_guest = False
        user.guest_token = None
        user.converted_from_guest_id = user.id
        user.session_token = new_token()
        user.last_login = utc_now()
        await self.users.save(user)
        _LOGGER.info("Converted guest %s to a registered account", user.id)
        return user


def session_token_from(request: Request) -> str | None:
    """Bearer header first, then the session cookie."""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


async def current_user(request: Request, db: AsyncSession = Depends(get_db)) -> Optional[User]:
    """The signed-in user, or None."""
    token = session_token_from(request)
    if not token:
        return None
    return await UserStore(db).find_by_session_token(token)


async def require_user(user: Optional[User] = Depends(current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": None if user.is_guest else user.email,
        "isGuest": bool(user.is_guest),
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }
