"""
Authentication.

Credentials are verified against bcrypt hashes; sessions are HS256 JWTs
carrying the user id (``sub``) and role.
"""

import secrets
import string
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import bcrypt
import jwt

from .config import Settings
from .errors import (
    DuplicateIdentityError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from .log import get_logger
from .models import AuthResponse, LoginRequest, RegisterRequest, Role, User, utcnow
from .service import LedgerService
from .storage import DuplicateRecordError

logger = get_logger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 5
ZERO = Decimal("0.00")


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


class AuthService:
    def __init__(self, ledger: LedgerService, settings: Settings):
        self.ledger = ledger
        self.storage = ledger.storage
        self.settings = settings
        # checked for unknown emails so both login failures cost one bcrypt round
        self._dummy_hash = hash_password(secrets.token_hex(8), settings.BCRYPT_ROUNDS)

    def register(self, request: RegisterRequest, role: Role = Role.USER) -> User:
        email = request.email.lower()
        if self.storage.find_user_by_email(email):
            raise DuplicateIdentityError(f"Email {email} is already registered")

        referrer = None
        if request.referral_code:
            referrer = self.storage.find_user_by_referral_code(request.referral_code)
            if referrer is None:
                raise ValidationError("Unknown referral code", "INVALID_REFERRAL_CODE")

        password_hash = hash_password(request.password, self.settings.BCRYPT_ROUNDS)

        for _ in range(MAX_CODE_ATTEMPTS):
            now = utcnow()
            user_data = {
                "id": str(uuid4()),
                "email": email,
                "name": request.name.strip(),
                "password_hash": password_hash,
                "balance": ZERO,
                "total_earned": ZERO,
                "total_withdrawn": ZERO,
                "referral_code": generate_referral_code(),
                "referred_by": referrer["id"] if referrer else None,
                "role": role.value,
                "is_suspended": False,
                "created_at": now,
                "updated_at": now,
            }
            try:
                self.storage.atomic(lambda: self._insert_user(user_data))
            except DuplicateRecordError:
                if self.storage.find_user_by_email(email):
                    raise DuplicateIdentityError(f"Email {email} is already registered")
                continue
            logger.info("user_registered", user_id=user_data["id"], referred_by=user_data["referred_by"])
            return User(**user_data)

        raise RuntimeError("Could not allocate a unique referral code")

    def _insert_user(self, user_data: dict) -> None:
        self.storage.insert_user(user_data)
        if user_data["referred_by"]:
            self.ledger.record_referral(user_data["referred_by"], user_data["id"])

    def login(self, request: LoginRequest) -> AuthResponse:
        user_data = self.storage.find_user_by_email(request.email.lower())
        if user_data is None:
            verify_password(request.password, self._dummy_hash)
            logger.warning("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("Invalid email or password")

        user = User(**user_data)
        if not verify_password(request.password, user.password_hash):
            logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("Invalid email or password")
        if user.is_suspended:
            raise ForbiddenError("Account is suspended", "ACCOUNT_SUSPENDED")

        logger.info("login_succeeded", user_id=user.id)
        return self.issue_token(user)

    def issue_token(self, user: User, expires_delta: Optional[timedelta] = None) -> AuthResponse:
        now = utcnow()
        expires_delta = expires_delta or timedelta(minutes=self.settings.JWT_EXPIRES_MINUTES)
        payload = {
            "sub": user.id,
            "role": user.role.value,
            "type": "access",
            "iat": now,
            "exp": now + expires_delta,
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(payload, self.settings.JWT_SECRET, algorithm=self.settings.JWT_ALGORITHM)
        return AuthResponse(
            token=token,
            expires_in=int(expires_delta.total_seconds()),
            user=user.public(),
        )

    def authenticate(self, token: str) -> User:
        try:
            payload = jwt.decode(
                token,
                self.settings.JWT_SECRET,
                algorithms=[self.settings.JWT_ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Session token has expired")
        except jwt.InvalidTokenError:
            raise TokenInvalidError("Session token is invalid")

        if payload.get("type") != "access":
            raise TokenInvalidError("Session token is invalid")

        user_data = self.storage.get_user(payload["sub"])
        if user_data is None:
            raise TokenInvalidError("Session token is invalid")
        user = User(**user_data)
        if user.is_suspended:
            raise ForbiddenError("Account is suspended", "ACCOUNT_SUSPENDED")
        return user

    def update_profile(self, user_id: str, name: str) -> User:
        user_data = self.storage.update_user(user_id, {"name": name.strip(), "updated_at": utcnow()})
        if user_data is None:
            raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
        return User(**user_data)

    def ensure_admin(self, email: str, password: str) -> User:
        """Create the bootstrap admin, or promote the account if it exists."""
        existing = self.storage.find_user_by_email(email.lower())
        if existing is not None:
            if existing["role"] != Role.ADMIN.value:
                existing = self.storage.update_user(
                    existing["id"], {"role": Role.ADMIN.value, "updated_at": utcnow()}
                )
                logger.info("admin_promoted", user_id=existing["id"])
            return User(**existing)

        user = self.register(
            RegisterRequest(email=email, password=password, name="Administrator"),
            role=Role.ADMIN,
        )
        logger.info("admin_created", user_id=user.id)
        return user
