"""
batchsettle/__init__.py

batchsettle: collateral-backed batch payment settlement.

Three components share one transaction manager and one signed event journal:

    CollateralLedger   per-principal available / locked / withdrawn / slashed
    SettlementEngine   batch state machine with pull-payment claims
    OracleRegistry     staked oracles voting batches through to settlement

SettlementSystem.from_config() wires all of them together.
"""

__version__         = "0.3.0"
__journal_version__ = "1.0"

from batchsettle.core.access import AccessControl, Role
from batchsettle.core.config import SettlementConfig
from batchsettle.core.crypto import Ed25519KeyManager
from batchsettle.core.emitter import EventJournal
from batchsettle.core.exceptions import (
    AuthorizationError,
    BalanceError,
    BatchSettleError,
    ConfigError,
    JournalError,
    PausedError,
    Reason,
    StateError,
    TemporalError,
    ValidationError,
)
from batchsettle.core.models import GENESIS_HASH, JOURNAL_VERSION, EventEnvelope, EventType
from batchsettle.core.time import ManualClock, SystemClock
from batchsettle.core.transactions import TransactionManager
from batchsettle.core.units import DECIMALS, format_amount, units
from batchsettle.ledger import CollateralAccount, CollateralLedger, InMemoryAsset, WithdrawalRequest
from batchsettle.oracle import BatchVoteRecord, OracleRecord, OracleRegistry
from batchsettle.runtime import SettlementSystem
from batchsettle.settlement import Batch, BatchStatus, Payment, SettlementEngine

__all__ = [
    # Components
    "CollateralLedger",
    "SettlementEngine",
    "OracleRegistry",
    "SettlementSystem",
    "InMemoryAsset",
    # Records
    "CollateralAccount",
    "WithdrawalRequest",
    "Batch",
    "BatchStatus",
    "Payment",
    "OracleRecord",
    "BatchVoteRecord",
    # Infrastructure
    "AccessControl",
    "Role",
    "SettlementConfig",
    "Ed25519KeyManager",
    "EventJournal",
    "EventEnvelope",
    "EventType",
    "TransactionManager",
    "ManualClock",
    "SystemClock",
    # Errors
    "BatchSettleError",
    "ValidationError",
    "BalanceError",
    "StateError",
    "PausedError",
    "TemporalError",
    "AuthorizationError",
    "JournalError",
    "ConfigError",
    "Reason",
    # Helpers
    "units",
    "format_amount",
    # Constants
    "DECIMALS",
    "GENESIS_HASH",
    "JOURNAL_VERSION",
]
