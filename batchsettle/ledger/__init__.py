"""
batchsettle Collateral Ledger

Custody and per-principal accounting of pre-funded collateral.
"""

from batchsettle.ledger.asset import InMemoryAsset
from batchsettle.ledger.collateral import CollateralAccount, CollateralLedger, WithdrawalRequest

__all__ = ["InMemoryAsset", "CollateralAccount", "CollateralLedger", "WithdrawalRequest"]
