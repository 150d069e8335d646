"""
batchsettle Runtime - wiring of a complete settlement system.
"""

from batchsettle.runtime.context import SettlementSystem

__all__ = ["SettlementSystem"]
