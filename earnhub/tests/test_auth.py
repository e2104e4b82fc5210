"""
Tests for registration, login and session tokens.
"""

from datetime import timedelta

import jwt
import pytest
from pydantic import ValidationError as SchemaError

from earnhub.auth import AuthService, hash_password, verify_password
from earnhub.errors import (
    DuplicateIdentityError,
    ForbiddenError,
    InvalidCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from earnhub.models import LoginRequest, RegisterRequest, Role


@pytest.fixture
def auth(ledger, settings):
    return AuthService(ledger, settings)


def register(auth, email="jane@earnhub.io", password="passw0rd-123", referral_code=None):
    return auth.register(RegisterRequest(
        email=email, password=password, name="Jane", referral_code=referral_code
    ))


class TestPasswords:
    def test_hash_is_not_plaintext(self):
        hashed = hash_password("passw0rd-123", rounds=4)

        assert hashed != "passw0rd-123"
        assert verify_password("passw0rd-123", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_garbage_hash_does_not_verify(self):
        assert not verify_password("passw0rd-123", "not-a-bcrypt-hash")


class TestRegister:
    def test_register_creates_user(self, auth, storage):
        user = register(auth)

        assert user.email == "jane@earnhub.io"
        assert user.role == Role.USER
        assert len(user.referral_code) == 8
        assert storage.get_user(user.id)["password_hash"] != "passw0rd-123"

    def test_email_is_case_insensitive(self, auth):
        register(auth, email="Jane@EarnHub.io")

        with pytest.raises(DuplicateIdentityError):
            register(auth, email="jane@earnhub.io")

    def test_unknown_referral_code(self, auth):
        with pytest.raises(ValidationError) as exc:
            register(auth, referral_code="NOPE1234")
        assert exc.value.code == "INVALID_REFERRAL_CODE"

    def test_referral_code_records_pending_referral(self, auth, ledger):
        referrer = register(auth, email="ref@earnhub.io")
        referred = register(auth, email="new@earnhub.io", referral_code=referrer.referral_code.lower())

        assert referred.referred_by == referrer.id
        summary = ledger.get_referral_summary(referrer.id)
        assert summary.total_referrals == 1
        assert summary.bonuses_granted == 0

    @pytest.mark.parametrize("password", ["short", "x" * 73])
    def test_password_length_rules(self, password):
        with pytest.raises(SchemaError):
            RegisterRequest(email="jane@earnhub.io", password=password, name="Jane")


class TestLogin:
    def test_login_returns_token(self, auth):
        user = register(auth)

        response = auth.login(LoginRequest(email="JANE@earnhub.io", password="passw0rd-123"))

        assert response.user.id == user.id
        assert auth.authenticate(response.token).id == user.id

    def test_wrong_password(self, auth):
        register(auth)

        with pytest.raises(InvalidCredentialsError):
            auth.login(LoginRequest(email="jane@earnhub.io", password="wrong-password"))

    def test_unknown_email(self, auth):
        with pytest.raises(InvalidCredentialsError):
            auth.login(LoginRequest(email="nobody@earnhub.io", password="passw0rd-123"))

    def test_suspended_user_cannot_login(self, auth, storage):
        user = register(auth)
        storage.update_user(user.id, {"is_suspended": True})

        with pytest.raises(ForbiddenError):
            auth.login(LoginRequest(email="jane@earnhub.io", password="passw0rd-123"))


class TestAuthenticate:
    def test_expired_token(self, auth):
        user = register(auth)
        token = auth.issue_token(user, expires_delta=timedelta(seconds=-1)).token

        with pytest.raises(TokenExpiredError):
            auth.authenticate(token)

    def test_tampered_token(self, auth):
        user = register(auth)
        header, payload, signature = auth.issue_token(user).token.split(".")

        with pytest.raises(TokenInvalidError):
            auth.authenticate(".".join([header, payload, signature[::-1]]))

    def test_token_signed_with_other_secret(self, auth):
        user = register(auth)
        token = jwt.encode({"sub": user.id, "type": "access", "exp": 9999999999}, "other", algorithm="HS256")

        with pytest.raises(TokenInvalidError):
            auth.authenticate(token)

    def test_token_for_deleted_user(self, auth, storage):
        user = register(auth)
        token = auth.issue_token(user).token
        del storage.users[user.id]

        with pytest.raises(TokenInvalidError):
            auth.authenticate(token)

    def test_suspended_user_token_rejected(self, auth, storage):
        user = register(auth)
        token = auth.issue_token(user).token
        storage.update_user(user.id, {"is_suspended": True})

        with pytest.raises(ForbiddenError) as exc:
            auth.authenticate(token)
        assert exc.value.code == "ACCOUNT_SUSPENDED"


class TestEnsureAdmin:
    def test_creates_admin(self, auth):
        admin = auth.ensure_admin("boss@earnhub.io", "boss-passw0rd")

        assert admin.role == Role.ADMIN
        assert auth.ensure_admin("boss@earnhub.io", "boss-passw0rd").id == admin.id

    def test_promotes_existing_user(self, auth):
        user = register(auth, email="boss@earnhub.io")

        admin = auth.ensure_admin("boss@earnhub.io", "ignored-passw0rd")

        assert admin.id == user.id
        assert admin.role == Role.ADMIN
