"""
Runtime context: one fully wired settlement system.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from batchsettle.core.access import Role
from batchsettle.core.config import SettlementConfig
from batchsettle.core.crypto import Ed25519KeyManager
from batchsettle.core.emitter import EventJournal
from batchsettle.core.time import Clock
from batchsettle.core.transactions import TransactionManager
from batchsettle.ledger.asset import InMemoryAsset
from batchsettle.ledger.collateral import CollateralLedger
from batchsettle.oracle.registry import OracleRegistry
from batchsettle.settlement.engine import SettlementEngine


@dataclass
class SettlementSystem:
    """Ledger, settlement engine and oracle registry sharing one journal."""

    config:      SettlementConfig
    asset:       InMemoryAsset
    stake_asset: InMemoryAsset
    journal:     EventJournal
    tx:          TransactionManager
    ledger:      CollateralLedger
    settlement:  SettlementEngine
    oracles:     OracleRegistry

    @classmethod
    def from_config(
        cls,
        config: Union[SettlementConfig, str, Path, None] = None,
        journal_path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Optional[Clock] = None,
    ) -> "SettlementSystem":
        """
        Build a system from a SettlementConfig or a YAML config path.

        The journal signing key is loaded from key_path when it exists,
        otherwise generated (and saved to key_path if one was given).
        The settlement engine is granted SETTLEMENT_OPERATOR on the ledger
        and the oracle registry ORACLE_CALLER on the settlement engine.
        """
        if config is None:
            config = SettlementConfig()
        elif not isinstance(config, SettlementConfig):
            config = SettlementConfig.from_yaml(config)

        if key_path is not None and Path(key_path).exists():
            key_manager = Ed25519KeyManager.from_file(key_path)
        else:
            key_manager = Ed25519KeyManager.generate()
            if key_path is not None:
                key_manager.save(key_path)

        journal     = EventJournal(key_manager, journal_path)
        tx          = TransactionManager(journal, clock)
        asset       = InMemoryAsset("USDC", config.decimals, tx)
        stake_asset = InMemoryAsset("STAKE", config.decimals, tx)

        ledger = CollateralLedger(
            asset, tx,
            admin=            config.admin,
            treasury=         config.treasury,
            identity=         config.ledger_identity,
            minimum_deposit=  config.minimum_deposit,
            withdrawal_delay= config.withdrawal_delay,
        )
        settlement = SettlementEngine(
            ledger, tx,
            admin=              config.admin,
            identity=           config.settlement_identity,
            settlement_timeout= config.settlement_timeout,
            max_batch_size=     config.max_batch_size,
        )
        oracles = OracleRegistry(
            settlement, stake_asset, tx,
            admin=              config.admin,
            treasury=           config.oracle_treasury,
            identity=           config.oracle_identity,
            minimum_stake=      config.minimum_stake,
            approval_threshold= config.approval_threshold,
        )

        ledger.access.grant_role(config.admin, Role.SETTLEMENT_OPERATOR, settlement.identity)
        settlement.access.grant_role(config.admin, Role.ORACLE_CALLER, oracles.identity)

        return cls(
            config=      config,
            asset=       asset,
            stake_asset= stake_asset,
            journal=     journal,
            tx=          tx,
            ledger=      ledger,
            settlement=  settlement,
            oracles=     oracles,
        )

    def __repr__(self) -> str:
        return (
            f"SettlementSystem("
            f"tvl={self.ledger.total_value_locked()}, "
            f"batches={self.settlement.metrics()['total_batches']}, "
            f"journal_entries={len(self.journal.envelopes())})"
        )
