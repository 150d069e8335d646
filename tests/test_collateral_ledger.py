"""
tests/test_collateral_ledger.py

Collateral ledger: deposits, delayed withdrawals, locking, paid transfers,
slashing, emergency exits, admin setters and the pause switch.

Every test ends with the books balanced:
    available + locked + total_withdrawn + total_slashed == total_deposited
"""

import pytest

from batchsettle import EventType, units
from batchsettle.core.config import MAX_WITHDRAWAL_DELAY, MIN_WITHDRAWAL_DELAY
from batchsettle.core.exceptions import (
    AuthorizationError,
    BalanceError,
    PausedError,
    Reason,
    StateError,
    TemporalError,
    ValidationError,
)
from batchsettle.core.time import DAY, HOUR

from conftest import ADMIN, FINTECH, MERCHANT_A, OPERATOR, SLASHER, account_of, assert_conserved


def journal_size(system) -> int:
    return len(system.journal.envelopes())


# ─────────────────────────────────────────────────────────────
# Deposits
# ─────────────────────────────────────────────────────────────

class TestDeposit:

    def test_deposit_credits_available(self, system):
        system.asset.mint(FINTECH, units(5_000))
        system.ledger.deposit(FINTECH, units(2_000))

        acct = account_of(system)
        assert acct["total_deposited"] == units(2_000)
        assert acct["available"] == units(2_000)
        assert acct["locked"] == 0
        assert system.asset.balance_of(FINTECH) == units(3_000)
        assert system.ledger.total_value_locked() == units(2_000)
        assert_conserved(system)

    def test_deposit_at_minimum_accepted(self, system):
        system.asset.mint(FINTECH, units(1_000))
        system.ledger.deposit(FINTECH, system.ledger.minimum_deposit)
        assert account_of(system)["available"] == units(1_000)

    def test_below_minimum_rejected_without_trace(self, system):
        system.asset.mint(FINTECH, units(5_000))
        before = journal_size(system)

        with pytest.raises(BalanceError) as exc:
            system.ledger.deposit(FINTECH, units(999))

        assert exc.value.reason == Reason.BELOW_MINIMUM_DEPOSIT
        assert exc.value.category == "balance"
        assert account_of(system)["total_deposited"] == 0
        assert system.asset.balance_of(FINTECH) == units(5_000)
        assert journal_size(system) == before

    def test_zero_amount_is_validation_error(self, system):
        with pytest.raises(ValidationError) as exc:
            system.ledger.deposit(FINTECH, 0)
        assert exc.value.reason == Reason.ZERO_AMOUNT

    def test_deposit_without_funds_rejected(self, system):
        system.asset.mint(FINTECH, units(500))
        with pytest.raises(BalanceError) as exc:
            system.ledger.deposit(FINTECH, units(1_000))
        assert exc.value.reason == Reason.INSUFFICIENT_ASSET_BALANCE
        assert account_of(system)["available"] == 0
        assert system.ledger.total_value_locked() == 0

    def test_deposit_event_carries_balances(self, funded):
        env = funded.journal.last(EventType.DEPOSITED)
        assert env.source == funded.ledger.identity
        assert env.payload["principal"] == FINTECH
        assert env.payload["amount"] == units(10_000)
        assert env.payload["decimals"] == 6
        assert env.payload["account"]["available"] == units(10_000)
        assert env.payload["total_value_locked"] == units(10_000)

    def test_unknown_principal_reads_as_zero(self, system):
        acct = system.ledger.get_account("nobody")
        assert acct.total_deposited == 0 and acct.is_balanced()
        assert "nobody" not in system.ledger.principals()


# ─────────────────────────────────────────────────────────────
# Delayed withdrawals
# ─────────────────────────────────────────────────────────────

class TestWithdrawal:

    def test_round_trip_restores_available(self, system, clock):
        system.asset.mint(FINTECH, units(5_000))
        system.ledger.deposit(FINTECH, units(3_000))

        system.ledger.request_withdrawal(FINTECH, units(3_000))
        clock.advance(DAY)
        system.ledger.execute_withdrawal(FINTECH)

        acct = account_of(system)
        assert acct["available"] == 0
        assert acct["total_withdrawn"] == units(3_000)
        assert system.asset.balance_of(FINTECH) == units(5_000)
        assert system.ledger.get_withdrawal_request(FINTECH) is None
        assert_conserved(system)

    def test_execute_before_delay_rejected(self, funded, clock):
        funded.ledger.request_withdrawal(FINTECH, units(1_000))
        clock.advance(DAY - 1)

        assert not funded.ledger.is_withdrawal_ready(FINTECH)
        with pytest.raises(TemporalError) as exc:
            funded.ledger.execute_withdrawal(FINTECH)
        assert exc.value.reason == Reason.WITHDRAWAL_DELAY_NOT_MET

        clock.advance(1)
        assert funded.ledger.is_withdrawal_ready(FINTECH)
        funded.ledger.execute_withdrawal(FINTECH)
        assert account_of(funded)["available"] == units(9_000)

    def test_second_request_rejected_while_pending(self, funded):
        funded.ledger.request_withdrawal(FINTECH, units(1_000))
        with pytest.raises(StateError) as exc:
            funded.ledger.request_withdrawal(FINTECH, units(500))
        assert exc.value.reason == Reason.PENDING_WITHDRAWAL
        assert funded.ledger.get_withdrawal_request(FINTECH).amount == units(1_000)

    def test_request_above_available_rejected(self, funded):
        with pytest.raises(BalanceError) as exc:
            funded.ledger.request_withdrawal(FINTECH, units(10_001))
        assert exc.value.reason == Reason.INSUFFICIENT_AVAILABLE
        assert funded.ledger.get_withdrawal_request(FINTECH) is None

    def test_execute_without_request(self, funded):
        with pytest.raises(StateError) as exc:
            funded.ledger.execute_withdrawal(FINTECH)
        assert exc.value.reason == Reason.NO_WITHDRAWAL_REQUEST

    def test_cancel_then_request_again(self, funded):
        funded.ledger.request_withdrawal(FINTECH, units(1_000))
        funded.ledger.cancel_withdrawal(FINTECH)
        assert funded.ledger.get_withdrawal_request(FINTECH) is None
        assert account_of(funded)["available"] == units(10_000)

        funded.ledger.request_withdrawal(FINTECH, units(2_000))
        assert funded.ledger.get_withdrawal_request(FINTECH).amount == units(2_000)

    def test_cancel_without_request(self, funded):
        with pytest.raises(StateError) as exc:
            funded.ledger.cancel_withdrawal(FINTECH)
        assert exc.value.reason == Reason.NO_WITHDRAWAL_REQUEST

    def test_execute_revalidates_after_lock(self, operated, clock):
        """A lock taken after the request shrinks what can be paid out."""
        operated.ledger.request_withdrawal(FINTECH, units(8_000))
        operated.ledger.lock(OPERATOR, FINTECH, units(5_000), "batch-x")
        clock.advance(DAY)

        with pytest.raises(BalanceError) as exc:
            operated.ledger.execute_withdrawal(FINTECH)
        assert exc.value.reason == Reason.INSUFFICIENT_AVAILABLE
        # request survives the rejection
        assert operated.ledger.get_withdrawal_request(FINTECH).amount == units(8_000)
        assert_conserved(operated)

    def test_execute_uses_current_delay(self, funded, clock):
        funded.ledger.request_withdrawal(FINTECH, units(1_000))
        funded.ledger.set_withdrawal_delay(ADMIN, 2 * DAY)
        clock.advance(DAY)
        assert not funded.ledger.is_withdrawal_ready(FINTECH)
        clock.advance(DAY)
        funded.ledger.execute_withdrawal(FINTECH)


# ─────────────────────────────────────────────────────────────
# Lock / unlock / transfer_from_locked
# ─────────────────────────────────────────────────────────────

class TestLocking:

    def test_lock_requires_operator_role(self, funded):
        with pytest.raises(AuthorizationError) as exc:
            funded.ledger.lock("mallory", FINTECH, units(100), "b")
        assert exc.value.reason == Reason.MISSING_ROLE
        assert account_of(funded)["locked"] == 0

    def test_lock_and_unlock_move_between_buckets(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(3_000), "b1")
        acct = account_of(operated)
        assert acct["available"] == units(7_000)
        assert acct["locked"] == units(3_000)

        operated.ledger.unlock(OPERATOR, FINTECH, units(1_000), "b1")
        acct = account_of(operated)
        assert acct["available"] == units(8_000)
        assert acct["locked"] == units(2_000)
        assert operated.ledger.total_value_locked() == units(10_000)
        assert_conserved(operated)

    def test_lock_beyond_available(self, operated):
        with pytest.raises(BalanceError) as exc:
            operated.ledger.lock(OPERATOR, FINTECH, units(10_001), "b1")
        assert exc.value.reason == Reason.INSUFFICIENT_AVAILABLE

    def test_unlock_beyond_locked(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(100), "b1")
        with pytest.raises(BalanceError) as exc:
            operated.ledger.unlock(OPERATOR, FINTECH, units(101), "b1")
        assert exc.value.reason == Reason.INSUFFICIENT_LOCKED

    def test_transfer_from_locked_is_permanent_exit(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(3_000), "b1")
        operated.ledger.transfer_from_locked(OPERATOR, FINTECH, MERCHANT_A, units(1_000), "b1")

        acct = account_of(operated)
        assert acct["locked"] == units(2_000)
        assert acct["available"] == units(7_000)
        assert acct["total_deposited"] == units(9_000)
        assert acct["total_withdrawn"] == 0
        assert operated.asset.balance_of(MERCHANT_A) == units(1_000)
        assert operated.ledger.total_value_locked() == units(9_000)
        assert_conserved(operated)

    def test_transfer_to_null_payee(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(100), "b1")
        with pytest.raises(ValidationError) as exc:
            operated.ledger.transfer_from_locked(OPERATOR, FINTECH, "", units(100), "b1")
        assert exc.value.reason == Reason.INVALID_PAYEE

    def test_transfer_beyond_locked(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(100), "b1")
        with pytest.raises(BalanceError) as exc:
            operated.ledger.transfer_from_locked(OPERATOR, FINTECH, MERCHANT_A, units(200), "b1")
        assert exc.value.reason == Reason.INSUFFICIENT_LOCKED
        assert operated.asset.balance_of(MERCHANT_A) == 0


# ─────────────────────────────────────────────────────────────
# Slashing
# ─────────────────────────────────────────────────────────────

class TestSlash:

    def test_slash_moves_locked_to_treasury(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(2_000), "b1")
        operated.ledger.slash(SLASHER, FINTECH, units(500), "fraud")

        acct = account_of(operated)
        assert acct["locked"] == units(1_500)
        assert acct["total_slashed"] == units(500)
        assert operated.asset.balance_of(operated.ledger.treasury) == units(500)
        assert_conserved(operated)

    def test_slash_cannot_touch_available(self, operated):
        with pytest.raises(BalanceError) as exc:
            operated.ledger.slash(SLASHER, FINTECH, units(1), "fraud")
        assert exc.value.reason == Reason.INSUFFICIENT_LOCKED

    def test_slash_requires_slasher(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(2_000), "b1")
        with pytest.raises(AuthorizationError):
            operated.ledger.slash(OPERATOR, FINTECH, units(1), "fraud")

    def test_slash_follows_treasury_change(self, operated):
        operated.ledger.set_treasury(ADMIN, "new-treasury")
        operated.ledger.lock(OPERATOR, FINTECH, units(100), "b1")
        operated.ledger.slash(SLASHER, FINTECH, units(100), "fraud")
        assert operated.asset.balance_of("new-treasury") == units(100)


# ─────────────────────────────────────────────────────────────
# Admin entry points
# ─────────────────────────────────────────────────────────────

class TestAdmin:

    def test_emergency_withdraw_skips_delay(self, funded):
        funded.ledger.emergency_withdraw(ADMIN, FINTECH, units(4_000))
        acct = account_of(funded)
        assert acct["available"] == units(6_000)
        assert acct["total_withdrawn"] == units(4_000)
        assert funded.asset.balance_of(FINTECH) == units(94_000)
        assert_conserved(funded)

    def test_emergency_withdraw_is_admin_only(self, funded):
        with pytest.raises(AuthorizationError):
            funded.ledger.emergency_withdraw(FINTECH, FINTECH, units(1))

    @pytest.mark.parametrize("delay,reason", [
        (MIN_WITHDRAWAL_DELAY - 1, Reason.DELAY_TOO_SHORT),
        (MAX_WITHDRAWAL_DELAY + 1, Reason.DELAY_TOO_LONG),
    ])
    def test_withdrawal_delay_bounds(self, system, delay, reason):
        with pytest.raises(ValidationError) as exc:
            system.ledger.set_withdrawal_delay(ADMIN, delay)
        assert exc.value.reason == reason
        assert system.ledger.withdrawal_delay == DAY

    def test_withdrawal_delay_update_emits(self, system):
        system.ledger.set_withdrawal_delay(ADMIN, HOUR)
        assert system.ledger.withdrawal_delay == HOUR
        env = system.journal.last(EventType.WITHDRAWAL_DELAY_UPDATED)
        assert env.payload == {"old": DAY, "new": HOUR}

    def test_null_treasury_rejected(self, system):
        with pytest.raises(ValidationError):
            system.ledger.set_treasury(ADMIN, "")


# ─────────────────────────────────────────────────────────────
# Pause switch
# ─────────────────────────────────────────────────────────────

class TestPause:

    def test_pause_halts_principal_calls(self, funded):
        funded.ledger.pause(ADMIN)
        assert funded.ledger.paused

        with pytest.raises(PausedError) as exc:
            funded.ledger.deposit(FINTECH, units(1_000))
        assert exc.value.reason == Reason.PAUSED
        with pytest.raises(PausedError):
            funded.ledger.request_withdrawal(FINTECH, units(1_000))

        funded.ledger.unpause(ADMIN)
        funded.ledger.deposit(FINTECH, units(1_000))
        assert account_of(funded)["available"] == units(11_000)

    def test_recovery_paths_stay_open(self, operated):
        operated.ledger.lock(OPERATOR, FINTECH, units(1_000), "b1")
        operated.ledger.pause(ADMIN)

        with pytest.raises(PausedError):
            operated.ledger.lock(OPERATOR, FINTECH, units(1), "b2")
        operated.ledger.unlock(OPERATOR, FINTECH, units(1_000), "b1")
        operated.ledger.emergency_withdraw(ADMIN, FINTECH, units(500))
        assert_conserved(operated)

    def test_pause_is_admin_only(self, system):
        with pytest.raises(AuthorizationError):
            system.ledger.pause(FINTECH)
        assert not system.ledger.paused

    def test_pause_events(self, system):
        system.ledger.pause(ADMIN)
        system.ledger.unpause(ADMIN)
        assert system.journal.last(EventType.PAUSED).payload == {"by": ADMIN}
        assert system.journal.last(EventType.UNPAUSED).source == system.ledger.identity
