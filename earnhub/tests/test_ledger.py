"""
Unit Tests for the Ledger Service

Tests cover:
1. Task reward crediting (once per user and task)
2. Withdrawal requests and the non-negative balance rule
3. Withdrawal resolution (approve / reject with reversal)
4. Referral bonuses
5. Concurrent withdrawals
"""

import random
import threading
from decimal import Decimal

import pytest

from earnhub.errors import (
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
from earnhub.models import EntrySource, EntryType, WithdrawalDecision, WithdrawalStatus


def entries_total(ledger, user_id):
    history = ledger.get_ledger_history(user_id, limit=1000)
    return sum((e.amount for e in history.entries), Decimal("0.00"))


class TestCreditTaskReward:
    """Tests for the task reward flow."""

    def test_credit_reward_success(self, ledger, make_user, make_task):
        """Completing a task credits its reward and writes a ledger entry."""
        user_id = make_user()
        task_id = make_task(reward="10.00")

        result = ledger.credit_task_reward(user_id, task_id)

        assert result.reward == Decimal("10.00")
        assert result.balance == Decimal("10.00")

        history = ledger.get_ledger_history(user_id)
        assert history.total_count == 1
        entry = history.entries[0]
        assert entry.entry_type == EntryType.CREDIT
        assert entry.source == EntrySource.TASK_REWARD
        assert entry.balance_after == Decimal("10.00")
        assert entry.reference_id == task_id

    def test_same_task_twice_credits_once(self, ledger, make_user, make_task):
        """Test that completing the same task again fails and the balance is unchanged."""
        user_id = make_user()
        task_id = make_task(reward="7.50")

        ledger.credit_task_reward(user_id, task_id)
        with pytest.raises(TaskAlreadyCompletedError):
            ledger.credit_task_reward(user_id, task_id)

        balance = ledger.get_balance(user_id)
        assert balance.balance == Decimal("7.50")
        assert balance.total_earned == Decimal("7.50")
        assert balance.total_entries == 1

    def test_different_users_can_complete_same_task(self, ledger, make_user, make_task):
        task_id = make_task(reward="3.00")
        first, second = make_user(), make_user()

        ledger.credit_task_reward(first, task_id)
        ledger.credit_task_reward(second, task_id)

        assert ledger.get_balance(first).balance == Decimal("3.00")
        assert ledger.get_balance(second).balance == Decimal("3.00")

    def test_unknown_task_fails(self, ledger, make_user):
        user_id = make_user()

        with pytest.raises(NotFoundError) as exc:
            ledger.credit_task_reward(user_id, "missing-task")
        assert exc.value.code == "TASK_NOT_FOUND"

    def test_inactive_task_fails(self, ledger, make_user, make_task):
        user_id = make_user()
        task_id = make_task(is_active=False)

        with pytest.raises(NotFoundError):
            ledger.credit_task_reward(user_id, task_id)
        assert ledger.get_balance(user_id).balance == Decimal("0.00")

    def test_unknown_user_leaves_no_completion(self, ledger, storage, make_task):
        """A failed credit rolls back the completion record."""
        task_id = make_task()

        with pytest.raises(NotFoundError):
            ledger.credit_task_reward("ghost", task_id)
        assert storage.completed_task_ids("ghost") == set()

    def test_balance_counts_completed_tasks(self, ledger, make_user, make_task):
        user_id = make_user()
        ledger.credit_task_reward(user_id, make_task(reward="1.00"))
        ledger.credit_task_reward(user_id, make_task(reward="2.00"))

        summary = ledger.get_balance(user_id)

        assert summary.tasks_completed == 2
        assert summary.balance == Decimal("3.00")

    def test_task_list_marks_completed(self, ledger, make_user, make_task):
        user_id = make_user()
        done = make_task(title="Done")
        make_task(title="Open")
        make_task(title="Hidden", is_active=False)

        ledger.credit_task_reward(user_id, done)
        tasks = {t.title: t for t in ledger.list_tasks(user_id)}

        assert set(tasks) == {"Done", "Open"}
        assert tasks["Done"].completed is True
        assert tasks["Open"].completed is False


class TestWithdrawalRequest:
    """Tests for the withdrawal request flow."""

    def test_withdrawal_debits_balance(self, ledger, make_user):
        user_id = make_user(balance="25.00")

        withdrawal = ledger.request_withdrawal(user_id, Decimal("10.00"), "paypal", "jane@earnhub.io")

        assert withdrawal.status == WithdrawalStatus.PENDING
        assert withdrawal.amount == Decimal("10.00")
        assert ledger.get_balance(user_id).balance == Decimal("15.00")

        entry = ledger.get_ledger_history(user_id).entries[0]
        assert entry.entry_type == EntryType.DEBIT
        assert entry.amount == Decimal("-10.00")
        assert entry.reference_id == withdrawal.id

    def test_withdraw_entire_balance(self, ledger, make_user):
        user_id = make_user(balance="10.00")

        ledger.request_withdrawal(user_id, Decimal("10.00"), "bank")

        assert ledger.get_balance(user_id).balance == Decimal("0.00")

    def test_insufficient_balance(self, ledger, make_user):
        """Test that an over-balance request fails and leaves no trace."""
        user_id = make_user(balance="10.00")

        with pytest.raises(InsufficientBalanceError):
            ledger.request_withdrawal(user_id, Decimal("15.00"), "paypal")

        assert ledger.get_balance(user_id).balance == Decimal("10.00")
        assert ledger.list_withdrawals(user_id=user_id) == []

    @pytest.mark.parametrize(
        "amount", ["0", "-5", "NaN", "Infinity", "1.005", "1e-30", "1e30", "1000000000000.00"]
    )
    def test_invalid_amount(self, ledger, make_user, amount):
        user_id = make_user(balance="10.00")

        with pytest.raises(InvalidAmountError):
            ledger.request_withdrawal(user_id, Decimal(amount), "paypal")
        assert ledger.get_balance(user_id).balance == Decimal("10.00")

    def test_unknown_user(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.request_withdrawal("ghost", Decimal("1.00"), "paypal")


class TestResolveWithdrawal:
    """Tests for approving and rejecting withdrawals."""

    def test_reject_restores_exact_amount(self, ledger, make_user):
        user_id = make_user(balance="42.37")
        withdrawal = ledger.request_withdrawal(user_id, Decimal("12.37"), "paypal")

        resolved = ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.REJECT, "admin-1", "Invalid account")

        assert resolved.status == WithdrawalStatus.REJECTED
        assert resolved.resolved_by == "admin-1"
        assert resolved.admin_note == "Invalid account"
        assert resolved.resolved_at is not None
        assert ledger.get_balance(user_id).balance == Decimal("42.37")

        reversal = ledger.get_ledger_history(user_id).entries[0]
        assert reversal.entry_type == EntryType.REVERSAL
        assert reversal.amount == Decimal("12.37")

    def test_approve_keeps_balance(self, ledger, make_user):
        user_id = make_user(balance="30.00")
        withdrawal = ledger.request_withdrawal(user_id, Decimal("20.00"), "bank")

        resolved = ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.APPROVE, "admin-1")

        balance = ledger.get_balance(user_id)
        assert resolved.status == WithdrawalStatus.APPROVED
        assert balance.balance == Decimal("10.00")
        assert balance.total_withdrawn == Decimal("20.00")

    def test_cannot_resolve_twice(self, ledger, make_user):
        """Test that a terminal withdrawal cannot change state or balance again."""
        user_id = make_user(balance="30.00")
        withdrawal = ledger.request_withdrawal(user_id, Decimal("20.00"), "bank")
        ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.APPROVE)

        with pytest.raises(AlreadyResolvedError):
            ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.REJECT)
        with pytest.raises(AlreadyResolvedError):
            ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.APPROVE)

        assert ledger.get_balance(user_id).balance == Decimal("10.00")
        assert ledger.get_withdrawal(withdrawal.id).status == WithdrawalStatus.APPROVED

    def test_double_reject_credits_once(self, ledger, make_user):
        user_id = make_user(balance="5.00")
        withdrawal = ledger.request_withdrawal(user_id, Decimal("5.00"), "bank")
        ledger.resolve_withdrawal(withdrawal.id, "reject")

        with pytest.raises(AlreadyResolvedError):
            ledger.resolve_withdrawal(withdrawal.id, "reject")
        assert ledger.get_balance(user_id).balance == Decimal("5.00")

    def test_resolve_nonexistent_withdrawal(self, ledger):
        with pytest.raises(NotFoundError) as exc:
            ledger.resolve_withdrawal("missing", WithdrawalDecision.APPROVE)
        assert exc.value.code == "WITHDRAWAL_NOT_FOUND"


class TestReferralBonus:
    """Tests for referral bonuses."""

    def test_grant_once(self, ledger, make_user):
        referrer, referred = make_user(), make_user()

        balance = ledger.grant_referral_bonus(referrer, referred)
        assert balance == Decimal("5.00")

        with pytest.raises(AlreadyGrantedError):
            ledger.grant_referral_bonus(referrer, referred)

        assert ledger.get_balance(referrer).balance == Decimal("5.00")
        summary = ledger.get_referral_summary(referrer)
        assert summary.total_referrals == 1
        assert summary.bonuses_granted == 1
        assert summary.total_bonus_earned == Decimal("5.00")

    def test_self_referral_rejected(self, ledger, make_user):
        user_id = make_user()

        with pytest.raises(SelfReferralError):
            ledger.grant_referral_bonus(user_id, user_id)
        assert ledger.get_balance(user_id).balance == Decimal("0.00")

    def test_user_referred_by_someone_else(self, ledger, make_user):
        first, second, referred = make_user(), make_user(), make_user()
        ledger.grant_referral_bonus(first, referred)

        with pytest.raises(ConflictError) as exc:
            ledger.grant_referral_bonus(second, referred)
        assert exc.value.code == "ALREADY_REFERRED"
        assert ledger.get_balance(second).balance == Decimal("0.00")

    def test_unknown_user(self, ledger, make_user):
        referrer = make_user()

        with pytest.raises(NotFoundError):
            ledger.grant_referral_bonus(referrer, "ghost")

    def test_first_task_completion_pays_referrer(self, ledger, make_user, make_task):
        """The pending referral is paid when the referred user completes a task."""
        referrer = make_user()
        referred = make_user(referred_by=referrer)
        ledger.record_referral(referrer, referred)
        first_task, second_task = make_task(reward="2.00"), make_task(reward="3.00")

        ledger.credit_task_reward(referred, first_task)
        ledger.credit_task_reward(referred, second_task)

        assert ledger.get_balance(referrer).balance == Decimal("5.00")
        assert ledger.get_balance(referred).balance == Decimal("5.00")
        assert ledger.get_referral_summary(referrer).bonuses_granted == 1

    def test_reward_kept_when_referral_grant_is_unavailable(self, ledger, make_user, make_task, monkeypatch):
        """A database outage while paying the referrer does not fail the committed reward."""
        referrer = make_user()
        referred = make_user(referred_by=referrer)
        ledger.record_referral(referrer, referred)

        def unavailable(*args):
            raise ServiceUnavailableError("Database temporarily unavailable, please retry")

        monkeypatch.setattr(ledger, "grant_referral_bonus", unavailable)
        result = ledger.credit_task_reward(referred, make_task(reward="2.00"))

        assert result.balance == Decimal("2.00")
        assert ledger.get_balance(referrer).balance == Decimal("0.00")
        assert ledger.get_referral_summary(referrer).bonuses_granted == 0

    def test_reward_kept_when_referral_lookup_is_unavailable(self, ledger, storage, make_user, make_task, monkeypatch):
        referrer = make_user()
        referred = make_user(referred_by=referrer)
        ledger.record_referral(referrer, referred)

        def unavailable(*args):
            raise ServiceUnavailableError("Database temporarily unavailable, please retry")

        monkeypatch.setattr(storage, "find_referral_for", unavailable)
        result = ledger.credit_task_reward(referred, make_task(reward="2.00"))

        assert result.balance == Decimal("2.00")
        assert ledger.get_balance(referrer).balance == Decimal("0.00")

    def test_manual_grant_links_referred_user(self, ledger, storage, make_user):
        referrer, referred = make_user(), make_user()

        ledger.grant_referral_bonus(referrer, referred)

        assert storage.get_user(referred)["referred_by"] == referrer
        assert storage.find_referral_for(referred)["referrer_id"] == referrer

    def test_manual_grant_respects_existing_referrer(self, ledger, make_user):
        """A user whose referred_by names someone else cannot be claimed."""
        original, claimant = make_user(), make_user()
        referred = make_user(referred_by=original)

        with pytest.raises(ConflictError) as exc:
            ledger.grant_referral_bonus(claimant, referred)
        assert exc.value.code == "ALREADY_REFERRED"
        assert ledger.get_balance(claimant).balance == Decimal("0.00")


class TestConcurrency:
    """Concurrent balance mutations serialize at the storage layer."""

    def test_two_concurrent_withdrawals_one_wins(self, ledger, make_user):
        user_id = make_user(balance="100.00")
        barrier = threading.Barrier(2)
        outcomes = []

        def withdraw():
            barrier.wait()
            try:
                ledger.request_withdrawal(user_id, Decimal("60.00"), "paypal")
                outcomes.append("ok")
            except InsufficientBalanceError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=withdraw) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert ledger.get_balance(user_id).balance == Decimal("40.00")
        assert len(ledger.list_withdrawals(user_id=user_id)) == 1

    def test_many_concurrent_withdrawals_never_overdraw(self, ledger, make_user):
        user_id = make_user(balance="100.00")
        barrier = threading.Barrier(20)
        successes = []

        def withdraw():
            barrier.wait()
            try:
                successes.append(ledger.request_withdrawal(user_id, Decimal("10.00"), "paypal"))
            except InsufficientBalanceError:
                pass

        threads = [threading.Thread(target=withdraw) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 10
        assert ledger.get_balance(user_id).balance == Decimal("0.00")

    def test_concurrent_completion_of_same_task(self, ledger, make_user, make_task):
        user_id = make_user()
        task_id = make_task(reward="4.00")
        barrier = threading.Barrier(8)

        def complete():
            barrier.wait()
            try:
                ledger.credit_task_reward(user_id, task_id)
            except TaskAlreadyCompletedError:
                pass

        threads = [threading.Thread(target=complete) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert ledger.get_balance(user_id).balance == Decimal("4.00")


class TestBalanceInvariant:
    """Balance stays non-negative and equal to the sum of ledger entries."""

    def test_random_operation_sequence(self, ledger, make_user, make_task):
        rng = random.Random(1234)
        users = [make_user() for _ in range(4)]
        tasks = [make_task(reward=str(rng.randint(0, 20))) for _ in range(6)]
        withdrawals = []

        for _ in range(300):
            user_id = rng.choice(users)
            op = rng.choice(["task", "withdraw", "resolve", "referral"])
            try:
                if op == "task":
                    ledger.credit_task_reward(user_id, rng.choice(tasks))
                elif op == "withdraw":
                    amount = Decimal(rng.randint(1, 30))
                    withdrawals.append(ledger.request_withdrawal(user_id, amount, "paypal").id)
                elif op == "resolve" and withdrawals:
                    decision = rng.choice(list(WithdrawalDecision))
                    ledger.resolve_withdrawal(rng.choice(withdrawals), decision)
                elif op == "referral":
                    ledger.grant_referral_bonus(user_id, rng.choice(users))
            except (ConflictError, SelfReferralError):
                pass

            for uid in users:
                assert ledger.get_balance(uid).balance >= 0

        for uid in users:
            assert ledger.get_balance(uid).balance == entries_total(ledger, uid)


class TestScenario:
    """The end-to-end earn / withdraw / reject walk-through."""

    def test_earn_withdraw_reject(self, ledger, make_user, make_task):
        user_id = make_user(balance="0.00")
        task_id = make_task(reward="10.00")

        assert ledger.credit_task_reward(user_id, task_id).balance == Decimal("10.00")

        with pytest.raises(InsufficientBalanceError):
            ledger.request_withdrawal(user_id, Decimal("15.00"), "paypal")
        assert ledger.get_balance(user_id).balance == Decimal("10.00")

        withdrawal = ledger.request_withdrawal(user_id, Decimal("10.00"), "paypal")
        assert withdrawal.status == WithdrawalStatus.PENDING
        assert ledger.get_balance(user_id).balance == Decimal("0.00")

        ledger.resolve_withdrawal(withdrawal.id, WithdrawalDecision.REJECT, "admin")
        assert ledger.get_balance(user_id).balance == Decimal("10.00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
