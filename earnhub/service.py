from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .errors import (
    AlreadyGrantedError,
    AlreadyResolvedError,
    ConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    SelfReferralError,
    ServiceUnavailableError,
    TaskAlreadyCompletedError,
)
from .log import get_logger
from .models import (
    CENT,
    MAX_MONEY,
    BalanceSummary,
    EntrySource,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    Referral,
    ReferralSummary,
    Task,
    TaskCompletion,
    TaskCompletionResult,
    TaskView,
    User,
    Withdrawal,
    WithdrawalDecision,
    WithdrawalStatus,
    to_money,
    utcnow,
)
from .storage import DuplicateRecordError, InMemoryStorage

logger = get_logger(__name__)

DEFAULT_REFERRAL_BONUS = Decimal("5.00")


class LedgerService:
    """Single authority for balance changes.

    Every mutation is executed through ``storage.atomic`` so the check, the
    balance update and the audit entry commit together or not at all.
    """

    def __init__(self, storage=None, referral_bonus: Decimal = DEFAULT_REFERRAL_BONUS):
        self.storage = storage or InMemoryStorage()
        self.referral_bonus = to_money(referral_bonus)

    # -- task rewards -------------------------------------------------------

    def credit_task_reward(self, user_id: str, task_id: str) -> TaskCompletionResult:
        def unit():
            task = self._active_task(task_id)
            reward = task.reward
            now = utcnow()
            completion = TaskCompletion(
                id=str(uuid4()), user_id=user_id, task_id=task_id, reward=reward, completed_at=now
            )
            try:
                self.storage.insert_completion(completion.model_dump())
            except DuplicateRecordError:
                raise TaskAlreadyCompletedError(f"Task {task_id} already completed")

            user = self.storage.adjust_balance(user_id, reward, now, earned=reward)
            if user is None:
                raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")

            self._append_entry(
                user,
                EntryType.CREDIT,
                EntrySource.TASK_REWARD,
                reward,
                reference_id=task_id,
                idempotency_key=f"task:{task_id}:{user_id}",
                description=f"Reward for task '{task.title}'",
                now=now,
            )
            return user, reward, now

        try:
            user, reward, completed_at = self.storage.atomic(unit)
        except TaskAlreadyCompletedError:
            logger.warning("task_already_completed", user_id=user_id, task_id=task_id)
            raise

        logger.info(
            "task_reward_credited",
            user_id=user_id,
            task_id=task_id,
            reward=str(reward),
            balance=str(user["balance"]),
        )
        self._grant_pending_referral(user)

        return TaskCompletionResult(
            task_id=task_id,
            reward=reward,
            balance=user["balance"],
            completed_at=completed_at,
        )

    def _grant_pending_referral(self, user: dict) -> None:
        """Pay the referrer once the referred user has completed a task."""
        if not user.get("referred_by"):
            return
        referrer_id = user["referred_by"]
        try:
            referral = self.storage.atomic(lambda: self.storage.find_referral_for(user["id"]))
            if referral is None or referral["bonus_granted"]:
                return
            self.grant_referral_bonus(referral["referrer_id"], user["id"])
        except AlreadyGrantedError:
            logger.info("referral_bonus_already_granted", referrer_id=referrer_id, referred_id=user["id"])
        except ServiceUnavailableError:
            # the reward is already committed; an admin grant can settle the bonus later
            logger.warning("referral_bonus_deferred", referrer_id=referrer_id, referred_id=user["id"])

    # -- withdrawals --------------------------------------------------------

    def request_withdrawal(
        self,
        user_id: str,
        amount: Decimal,
        payment_method: str,
        account_details: Optional[str] = None,
    ) -> Withdrawal:
        amount = self._validate_amount(amount)

        def unit():
            now = utcnow()
            user = self.storage.adjust_balance(user_id, -amount, now)
            if user is None:
                current = self.storage.get_user(user_id)
                if current is None:
                    raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
                raise InsufficientBalanceError(
                    f"Insufficient balance: requested {amount}, available {current['balance']}"
                )

            withdrawal_data = {
                "id": str(uuid4()),
                "user_id": user_id,
                "amount": amount,
                "payment_method": payment_method,
                "account_details": account_details,
                "status": WithdrawalStatus.PENDING.value,
                "admin_note": None,
                "resolved_by": None,
                "created_at": now,
                "resolved_at": None,
            }
            self.storage.insert_withdrawal(withdrawal_data)
            self._append_entry(
                user,
                EntryType.DEBIT,
                EntrySource.WITHDRAWAL,
                -amount,
                reference_id=withdrawal_data["id"],
                idempotency_key=f"withdrawal:{withdrawal_data['id']}",
                description=f"Withdrawal request via {payment_method}",
                now=now,
            )
            return Withdrawal(**withdrawal_data), user

        try:
            withdrawal, user = self.storage.atomic(unit)
        except InsufficientBalanceError:
            logger.warning("withdrawal_insufficient_balance", user_id=user_id, amount=str(amount))
            raise

        logger.info(
            "withdrawal_requested",
            user_id=user_id,
            withdrawal_id=withdrawal.id,
            amount=str(amount),
            balance=str(user["balance"]),
        )
        return withdrawal

    def resolve_withdrawal(
        self,
        withdrawal_id: str,
        decision: WithdrawalDecision,
        resolved_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Withdrawal:
        decision = WithdrawalDecision(decision)

        def unit():
            now = utcnow()
            withdrawal_data = self.storage.transition_withdrawal(
                withdrawal_id,
                WithdrawalStatus.PENDING.value,
                {
                    "status": decision.status.value,
                    "resolved_by": resolved_by,
                    "resolved_at": now,
                    "admin_note": note,
                },
            )
            if withdrawal_data is None:
                existing = self.storage.get_withdrawal(withdrawal_id)
                if existing is None:
                    raise NotFoundError(f"Withdrawal {withdrawal_id} not found", "WITHDRAWAL_NOT_FOUND")
                raise AlreadyResolvedError(
                    f"Withdrawal {withdrawal_id} is already {existing['status']}"
                )

            user_id = withdrawal_data["user_id"]
            amount = withdrawal_data["amount"]
            if decision is WithdrawalDecision.REJECT:
                user = self.storage.adjust_balance(user_id, amount, now)
                if user is None:
                    raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
                self._append_entry(
                    user,
                    EntryType.REVERSAL,
                    EntrySource.WITHDRAWAL_REJECTED,
                    amount,
                    reference_id=withdrawal_id,
                    idempotency_key=f"withdrawal:{withdrawal_id}:reversal",
                    description=f"Reversal: {note}" if note else "Reversal: withdrawal rejected",
                    now=now,
                )
            else:
                user = self.storage.adjust_balance(user_id, Decimal("0.00"), now, withdrawn=amount)
                if user is None:
                    raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
            return Withdrawal(**withdrawal_data)

        withdrawal = self.storage.atomic(unit)
        logger.info(
            "withdrawal_resolved",
            withdrawal_id=withdrawal_id,
            status=withdrawal.status.value,
            amount=str(withdrawal.amount),
            resolved_by=resolved_by,
        )
        return withdrawal

    def _validate_amount(self, amount) -> Decimal:
        try:
            amount = Decimal(str(amount))
        except ArithmeticError:
            raise InvalidAmountError(f"Invalid amount: {amount}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmountError("Amount must be greater than zero")
        if amount > MAX_MONEY:
            raise InvalidAmountError(f"Amount must not exceed {MAX_MONEY}")
        if amount != amount.quantize(CENT):
            raise InvalidAmountError("Amount must have at most two decimal places")
        return to_money(amount)

    # -- referrals ----------------------------------------------------------

    def record_referral(self, referrer_id: str, referred_id: str) -> Referral:
        """Store a pending referral; the bonus is paid later."""
        if referrer_id == referred_id:
            raise SelfReferralError("Users cannot refer themselves")
        referral_data = {
            "id": str(uuid4()),
            "referrer_id": referrer_id,
            "referred_id": referred_id,
            "bonus_amount": self.referral_bonus,
            "bonus_granted": False,
            "created_at": utcnow(),
            "granted_at": None,
        }
        try:
            self.storage.insert_referral(referral_data)
        except DuplicateRecordError:
            raise ConflictError(f"User {referred_id} has already been referred", "ALREADY_REFERRED")
        return Referral(**referral_data)

    def grant_referral_bonus(self, referrer_id: str, referred_id: str) -> Decimal:
        if referrer_id == referred_id:
            raise SelfReferralError("Users cannot refer themselves")

        def unit():
            for uid in (referrer_id, referred_id):
                if self.storage.get_user(uid) is None:
                    raise NotFoundError(f"User {uid} not found", "USER_NOT_FOUND")

            now = utcnow()
            referral = self.storage.find_referral(referrer_id, referred_id)
            if referral is None:
                referred = self.storage.get_user(referred_id)
                if self.storage.find_referral_for(referred_id) is not None or referred.get("referred_by") not in (None, referrer_id):
                    raise ConflictError(
                        f"User {referred_id} was referred by another user", "ALREADY_REFERRED"
                    )
                referral = self.record_referral(referrer_id, referred_id).model_dump()
                self.storage.update_user(referred_id, {"referred_by": referrer_id, "updated_at": now})

            if self.storage.mark_referral_granted(referral["id"], now) is None:
                raise AlreadyGrantedError(
                    f"Referral bonus for {referrer_id} -> {referred_id} already granted"
                )

            bonus = referral["bonus_amount"]
            user = self.storage.adjust_balance(referrer_id, bonus, now, earned=bonus)
            self._append_entry(
                user,
                EntryType.CREDIT,
                EntrySource.REFERRAL_BONUS,
                bonus,
                reference_id=referred_id,
                idempotency_key=f"referral:{referrer_id}:{referred_id}",
                description=f"Referral bonus for {referred_id}",
                now=now,
            )
            return user

        user = self.storage.atomic(unit)
        logger.info(
            "referral_bonus_granted",
            referrer_id=referrer_id,
            referred_id=referred_id,
            balance=str(user["balance"]),
        )
        return user["balance"]

    def get_referral_summary(self, user_id: str) -> ReferralSummary:
        user = self.get_user(user_id)
        referrals = [Referral(**r) for r in self.storage.list_referrals(user_id)]
        granted = [r for r in referrals if r.bonus_granted]
        return ReferralSummary(
            referral_code=user.referral_code,
            total_referrals=len(referrals),
            bonuses_granted=len(granted),
            total_bonus_earned=sum((r.bonus_amount for r in granted), Decimal("0.00")),
            referrals=referrals,
        )

    # -- reads --------------------------------------------------------------

    def get_user(self, user_id: str) -> User:
        user_data = self.storage.get_user(user_id)
        if not user_data:
            raise NotFoundError(f"User {user_id} not found", "USER_NOT_FOUND")
        return User(**user_data)

    def get_balance(self, user_id: str) -> BalanceSummary:
        user = self.get_user(user_id)
        latest = self.storage.list_ledger_entries(user_id, limit=1)
        return BalanceSummary(
            user_id=user_id,
            balance=user.balance,
            total_earned=user.total_earned,
            total_withdrawn=user.total_withdrawn,
            total_entries=self.storage.count_ledger_entries(user_id),
            tasks_completed=self.storage.count_completions(user_id),
            last_transaction_at=latest[0]["created_at"] if latest else None,
        )

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user = self.get_user(user_id)
        entries = [LedgerEntry(**e) for e in self.storage.list_ledger_entries(user_id, offset, limit)]
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=self.storage.count_ledger_entries(user_id),
            current_balance=user.balance,
        )

    def list_tasks(self, user_id: str) -> list[TaskView]:
        completed = self.storage.completed_task_ids(user_id)
        return [
            TaskView(**t, completed=t["id"] in completed)
            for t in self.storage.list_tasks(active_only=True)
        ]

    def get_task(self, task_id: str, user_id: Optional[str] = None) -> TaskView:
        task = self._active_task(task_id)
        completed = user_id is not None and task_id in self.storage.completed_task_ids(user_id)
        return TaskView(**task.model_dump(), completed=completed)

    def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Withdrawal]:
        rows = self.storage.list_withdrawals(
            user_id=user_id,
            status=WithdrawalStatus(status).value if status else None,
            offset=offset,
            limit=limit,
        )
        return [Withdrawal(**w) for w in rows]

    def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        withdrawal_data = self.storage.get_withdrawal(withdrawal_id)
        if not withdrawal_data:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found", "WITHDRAWAL_NOT_FOUND")
        return Withdrawal(**withdrawal_data)

    def _active_task(self, task_id: str) -> Task:
        task_data = self.storage.get_task(task_id)
        if not task_data or not task_data["is_active"]:
            raise NotFoundError(f"Task {task_id} not found", "TASK_NOT_FOUND")
        return Task(**task_data)

    def _append_entry(
        self,
        user: dict,
        entry_type: EntryType,
        source: EntrySource,
        amount: Decimal,
        reference_id: Optional[str],
        idempotency_key: str,
        description: str,
        now,
    ) -> None:
        self.storage.insert_ledger_entry({
            "id": str(uuid4()),
            "user_id": user["id"],
            "entry_type": entry_type.value,
            "source": source.value,
            "amount": amount,
            "balance_after": user["balance"],
            "reference_id": reference_id,
            "idempotency_key": idempotency_key,
            "description": description,
            "created_at": now,
        })
