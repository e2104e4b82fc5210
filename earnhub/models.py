from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


CENT = Decimal("0.01")
# largest amount a balance, reward or withdrawal may hold
MAX_MONEY = Decimal("999999999999.99")


def to_money(value) -> Decimal:
    """Quantize any numeric value to two decimal places."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REVERSAL = "REVERSAL"


class EntrySource(str, Enum):
    TASK_REWARD = "task_reward"
    REFERRAL_BONUS = "referral_bonus"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def status(self) -> WithdrawalStatus:
        if self is WithdrawalDecision.APPROVE:
            return WithdrawalStatus.APPROVED
        return WithdrawalStatus.REJECTED


# ---------------------------------------------------------------------------
# Stored documents
# ---------------------------------------------------------------------------


class UserPublic(BaseModel):
    id: str
    email: str
    name: str
    balance: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    total_withdrawn: Decimal = Decimal("0.00")
    referral_code: str
    referred_by: Optional[str] = None
    role: Role = Role.USER
    is_suspended: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class User(UserPublic):
    password_hash: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def public(self) -> UserPublic:
        return UserPublic.model_validate(self.model_dump(exclude={"password_hash"}))


class Task(BaseModel):
    id: str
    title: str
    description: str = ""
    reward: Decimal
    category: str = "general"
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskCompletion(BaseModel):
    id: str
    user_id: str
    task_id: str
    reward: Decimal
    completed_at: datetime


class WithdrawalPublic(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    payment_method: str
    account_details: Optional[str] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    admin_note: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Withdrawal(WithdrawalPublic):
    resolved_by: Optional[str] = None

    def public(self) -> WithdrawalPublic:
        """Owner-facing view; the resolving admin stays private."""
        return WithdrawalPublic.model_validate(self.model_dump(exclude={"resolved_by"}))


class Referral(BaseModel):
    id: str
    referrer_id: str
    referred_id: str
    bonus_amount: Decimal
    bonus_granted: bool = False
    created_at: datetime
    granted_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    entry_type: EntryType
    source: EntrySource
    amount: Decimal
    balance_after: Decimal
    reference_id: Optional[str] = None
    idempotency_key: str
    description: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=100)
    referral_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "jane@earnhub.io",
            "password": "s3cure-passw0rd",
            "name": "Jane Doe",
            "referral_code": "K7Q2M9XA",
        }
    })

    @field_validator("password")
    @classmethod
    def _bcrypt_limit(cls, value: str) -> str:
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return value

    @field_validator("referral_code")
    @classmethod
    def _normalize_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UpdateProfileRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CreateTaskRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    reward: Decimal = Field(..., ge=0, le=MAX_MONEY)
    category: str = "general"
    is_active: bool = True


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    reward: Optional[Decimal] = Field(default=None, ge=0, le=MAX_MONEY)
    category: Optional[str] = None
    is_active: Optional[bool] = None


class WithdrawalRequest(BaseModel):
    amount: Decimal
    payment_method: str = Field(..., min_length=1, max_length=50)
    account_details: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": "10.00", "payment_method": "paypal", "account_details": "jane@earnhub.io"}
    })


class ResolveWithdrawalRequest(BaseModel):
    decision: WithdrawalDecision
    note: Optional[str] = Field(default=None, max_length=500)


class UpdateUserRequest(BaseModel):
    is_suspended: Optional[bool] = None
    role: Optional[Role] = None


class GrantReferralRequest(BaseModel):
    referrer_id: str
    referred_id: str


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AuthResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserPublic


class BalanceSummary(BaseModel):
    user_id: str
    balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    total_entries: int
    tasks_completed: int = 0
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class TaskView(Task):
    completed: bool = False


class TaskCompletionResult(BaseModel):
    task_id: str
    reward: Decimal
    balance: Decimal
    completed_at: datetime


class ReferralSummary(BaseModel):
    referral_code: str
    total_referrals: int
    bonuses_granted: int
    total_bonus_earned: Decimal
    referrals: list[Referral]


class ReferralBonusResult(BaseModel):
    referrer_id: str
    referred_id: str
    balance: Decimal


class AdminStats(BaseModel):
    total_users: int
    suspended_users: int
    active_tasks: int
    total_tasks: int
    pending_withdrawals: int
    pending_withdrawal_amount: Decimal
    total_paid_out: Decimal
    total_balance_outstanding: Decimal
