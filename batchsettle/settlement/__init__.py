"""
batchsettle Settlement Engine

Batch lifecycle:
- Creation locks the batch total on the collateral ledger
- Oracle approval opens the batch for claims
- Each payee pulls its own line out of locked collateral
- Cancel, fail and timeout return only the unclaimed remainder

Claims already paid are never reversed.
"""

from batchsettle.settlement.engine import Batch, Payment, SettlementEngine
from batchsettle.settlement.machine import BatchAction, BatchStatus

__all__ = ["SettlementEngine", "Batch", "Payment", "BatchStatus", "BatchAction"]
