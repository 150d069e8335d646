"""
Settlement configuration.

Loaded from YAML:

    decimals: 6
    minimum_deposit: "1000"        # whole units as a decimal string ...
    minimum_stake: 1000000000      # ... or base units as an integer
    withdrawal_delay: 24h          # seconds, or <n>s / <n>m / <n>h / <n>d
    settlement_timeout: 48h
    max_batch_size: 100
    approval_threshold: 1
    admin: governance
    treasury: treasury
    oracle_treasury: oracle-treasury
"""

import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from batchsettle.core.exceptions import ConfigError, Reason
from batchsettle.core.time import DAY, HOUR
from batchsettle.core.units import DECIMALS, parse_amount, units

MIN_WITHDRAWAL_DELAY = HOUR
MAX_WITHDRAWAL_DELAY = 7 * DAY

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": HOUR, "d": DAY}

_AMOUNT_FIELDS   = ("minimum_deposit", "minimum_stake")
_DURATION_FIELDS = ("withdrawal_delay", "settlement_timeout")
_INT_FIELDS      = ("decimals", "max_batch_size", "approval_threshold")


def parse_duration(value: Union[int, str]) -> int:
    """parse_duration("48h") == 172800"""
    if isinstance(value, bool):
        raise ValueError(f"not a duration: {value!r}")
    if isinstance(value, int):
        return value
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"not a duration: {value!r}")
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


@dataclass
class SettlementConfig:
    decimals:            int = DECIMALS
    minimum_deposit:     int = units(1000)
    withdrawal_delay:    int = DAY
    settlement_timeout:  int = 2 * DAY
    max_batch_size:      int = 100
    minimum_stake:       int = units(1000)
    approval_threshold:  int = 1
    admin:               str = "admin"
    treasury:            str = "treasury"
    oracle_treasury:     str = "oracle-treasury"
    ledger_identity:     str = "collateral-ledger"
    settlement_identity: str = "settlement-engine"
    oracle_identity:     str = "oracle-registry"

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                Reason.INVALID_CONFIG,
                f"unknown config keys: {sorted(unknown)}",
            )

        decimals = data.get("decimals", DECIMALS)
        kwargs: Dict[str, Any] = {}
        try:
            for key, value in data.items():
                if key in _AMOUNT_FIELDS:
                    kwargs[key] = parse_amount(value, decimals)
                elif key in _DURATION_FIELDS:
                    kwargs[key] = parse_duration(value)
                elif key in _INT_FIELDS:
                    if isinstance(value, bool) or not isinstance(value, int):
                        raise ValueError(f"{key} must be an integer, got {value!r}")
                    kwargs[key] = value
                else:
                    kwargs[key] = str(value)
        except ValueError as exc:
            raise ConfigError(Reason.INVALID_CONFIG, str(exc)) from exc
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SettlementConfig":
        """Load config from a YAML file. An empty file gives the defaults."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(Reason.INVALID_CONFIG, f"cannot load {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(Reason.INVALID_CONFIG, f"{path} must hold a mapping")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        problems = []
        if self.decimals < 0 or self.decimals > 18:
            problems.append("decimals must be within [0, 18]")
        if self.minimum_deposit <= 0:
            problems.append("minimum_deposit must be positive")
        if not MIN_WITHDRAWAL_DELAY <= self.withdrawal_delay <= MAX_WITHDRAWAL_DELAY:
            problems.append("withdrawal_delay must be within [1h, 7d]")
        if self.settlement_timeout <= 0:
            problems.append("settlement_timeout must be positive")
        if self.max_batch_size <= 0:
            problems.append("max_batch_size must be positive")
        if self.minimum_stake <= 0:
            problems.append("minimum_stake must be positive")
        if self.approval_threshold <= 0:
            problems.append("approval_threshold must be positive")
        for name in ("admin", "treasury", "oracle_treasury",
                     "ledger_identity", "settlement_identity", "oracle_identity"):
            if not getattr(self, name):
                problems.append(f"{name} must be non-empty")
        if problems:
            raise ConfigError(Reason.INVALID_CONFIG, "; ".join(problems))
