from typing import Optional
from uuid import uuid4

from .errors import ForbiddenError, NotFoundError, ValidationError
from .log import get_logger
from .models import (
    AdminStats,
    CreateTaskRequest,
    Role,
    Task,
    UpdateTaskRequest,
    UpdateUserRequest,
    User,
    UserPublic,
    Withdrawal,
    WithdrawalDecision,
    WithdrawalStatus,
    to_money,
    utcnow,
)
from .service import LedgerService

logger = get_logger(__name__)


def require_admin(actor: User) -> None:
    if not actor.is_admin:
        logger.warning("admin_access_denied", user_id=actor.id)
        raise ForbiddenError("Admin privileges required")


class AdminService:
    """Privileged operations. Every method checks the acting user's role."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    # -- tasks --------------------------------------------------------------

    def create_task(self, actor: User, request: CreateTaskRequest) -> Task:
        require_admin(actor)
        now = utcnow()
        task_data = {
            "id": str(uuid4()),
            "title": request.title.strip(),
            "description": request.description,
            "reward": to_money(request.reward),
            "category": request.category,
            "is_active": request.is_active,
            "created_by": actor.id,
            "created_at": now,
            "updated_at": now,
        }
        self.storage.insert_task(task_data)
        logger.info("task_created", task_id=task_data["id"], reward=str(task_data["reward"]), admin_id=actor.id)
        return Task(**task_data)

    def update_task(self, actor: User, task_id: str, request: UpdateTaskRequest) -> Task:
        require_admin(actor)
        fields = request.model_dump(exclude_unset=True, exclude_none=True)
        if "reward" in fields:
            fields["reward"] = to_money(fields["reward"])
        fields["updated_at"] = utcnow()
        task_data = self.storage.update_task(task_id, fields)
        if task_data is None:
            raise NotFoundError(f"Task {task_id} not found", "TASK_NOT_FOUND")
        logger.info("task_updated", task_id=task_id, fields=sorted(fields), admin_id=actor.id)
        return Task(**task_data)

    def list_tasks(self, actor: User) -> list[Task]:
        require_admin(actor)
        return [Task(**t) for t in self.storage.list_tasks(active_only=False)]

    # -- withdrawals --------------------------------------------------------

    def list_withdrawals(
        self,
        actor: User,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Withdrawal]:
        require_admin(actor)
        return self.ledger.list_withdrawals(status=status, limit=limit, offset=offset)

    def resolve_withdrawal(
        self,
        actor: User,
        withdrawal_id: str,
        decision: WithdrawalDecision,
        note: Optional[str] = None,
    ) -> Withdrawal:
        require_admin(actor)
        return self.ledger.resolve_withdrawal(withdrawal_id, decision, resolved_by=actor.id, note=note)

    # -- users --------------------------------------------------------------

    def list_users(self, actor: User, limit: int = 50, offset: int = 0) -> list[UserPublic]:
        require_admin(actor)
        return [User(**u).public() for u in self.storage.list_users(offset=offset, limit=limit)]

    def update_user(self, actor: User, user_id: str, request: UpdateUserRequest) -> UserPublic:
        require_admin(actor)
        fields = request.model_dump(exclude_unset=True, exclude_none=True)
        if user_id == actor.id and (fields.get("is_suspended") or fields.get("role") == Role.USER):
            raise ValidationError("Admins cannot suspend or demote themselves")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = utcnow()

        user_data = self.storage.update_user(user_id, fields)
        if user_data is None:
            raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
        logger.info("user_updated", user_id=user_id, fields=sorted(fields), admin_id=actor.id)
        return User(**user_data).public()

    # -- referrals ----------------------------------------------------------

    def grant_referral_bonus(self, actor: User, referrer_id: str, referred_id: str):
        require_admin(actor)
        return self.ledger.grant_referral_bonus(referrer_id, referred_id)

    # -- stats --------------------------------------------------------------

    def stats(self, actor: User) -> AdminStats:
        require_admin(actor)
        pending_count, pending_amount = self.storage.withdrawal_totals(WithdrawalStatus.PENDING.value)
        _, paid_out = self.storage.withdrawal_totals(WithdrawalStatus.APPROVED.value)
        return AdminStats(
            total_users=self.storage.count_users(),
            suspended_users=self.storage.count_users(is_suspended=True),
            active_tasks=self.storage.count_tasks(active_only=True),
            total_tasks=self.storage.count_tasks(),
            pending_withdrawals=pending_count,
            pending_withdrawal_amount=pending_amount,
            total_paid_out=paid_out,
            total_balance_outstanding=self.storage.sum_balances(),
        )
