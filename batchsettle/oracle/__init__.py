"""
batchsettle Oracle Registry

Staked oracle membership and threshold voting on batches.
"""

from batchsettle.oracle.registry import BatchVoteRecord, OracleRecord, OracleRegistry

__all__ = ["OracleRegistry", "OracleRecord", "BatchVoteRecord"]
