"""
tests/conftest.py

Shared fixtures: a manual clock and settlement systems at various stages of
setup (empty, funded principal, one registered oracle).
"""

from typing import Dict, List, Tuple

import pytest

from batchsettle import ManualClock, SettlementConfig, SettlementSystem, units
from batchsettle.core.access import Role

ADMIN      = "admin"
FINTECH    = "fintech-1"
FINTECH_2  = "fintech-2"
MERCHANT_A = "merchant-a"
MERCHANT_B = "merchant-b"
MERCHANT_C = "merchant-c"
ORACLE_1   = "oracle-1"
ORACLE_2   = "oracle-2"
ORACLE_3   = "oracle-3"
OPERATOR   = "operator"
SLASHER    = "slasher"
FRAUD      = "fraud-gate"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def system(clock) -> SettlementSystem:
    """Default-config system, nobody funded."""
    return SettlementSystem.from_config(SettlementConfig(admin=ADMIN), clock=clock)


@pytest.fixture
def funded(system) -> SettlementSystem:
    """FINTECH holds 100,000 and has deposited 10,000."""
    system.asset.mint(FINTECH, units(100_000))
    system.ledger.deposit(FINTECH, units(10_000))
    return system


@pytest.fixture
def operated(funded) -> SettlementSystem:
    """Funded system with extra OPERATOR and SLASHER identities on the ledger."""
    funded.ledger.access.grant_role(ADMIN, Role.SETTLEMENT_OPERATOR, OPERATOR)
    funded.ledger.access.grant_role(ADMIN, Role.SLASHER, SLASHER)
    return funded


@pytest.fixture
def with_oracle(funded) -> SettlementSystem:
    """Funded system with ORACLE_1 registered at exactly the minimum stake."""
    for oracle in (ORACLE_1, ORACLE_2, ORACLE_3):
        funded.stake_asset.mint(oracle, units(5_000))
    funded.oracles.register_oracle(ORACLE_1, funded.oracles.minimum_stake)
    return funded


def make_batch(system: SettlementSystem, lines: List[Tuple[str, int]], owner: str = FINTECH) -> str:
    """Create a batch from (payee, whole-unit amount) pairs."""
    payees  = [payee for payee, _ in lines]
    amounts = [units(amount) for _, amount in lines]
    return system.settlement.create_batch(owner, payees, amounts)


def account_of(system: SettlementSystem, principal: str = FINTECH) -> Dict[str, int]:
    return system.ledger.get_account(principal).to_dict()


def assert_conserved(system: SettlementSystem) -> None:
    """Bucket conservation per account, and custody balance == total value locked."""
    ledger = system.ledger
    for principal in ledger.principals():
        account = ledger.get_account(principal)
        assert account.is_balanced(), f"{principal}: {account}"
        assert account.locked >= 0 and account.available >= 0
    assert system.asset.balance_of(ledger.identity) == ledger.total_value_locked()
    for batch_id in system.settlement.batch_ids():
        batch = system.settlement.get_batch(batch_id)
        assert batch.claimed_total <= batch.total_amount
        assert batch.claimed_count == sum(1 for p in batch.payments if p.claimed)
        assert batch.claimed_total == sum(p.amount for p in batch.payments if p.claimed)
