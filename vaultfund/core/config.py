"""
Engine configuration.
Environment settings are read once into an immutable EngineConfig that every
component receives at construction time.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

# Database path configuration
DB_PATH = os.getenv("VAULTFUND_DB_PATH", "./data/vaultfund.db")

# Debug flag
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Deployment target
NETWORK_ID = int(os.getenv("VAULTFUND_NETWORK_ID", "421614"))
PRICE_FEED_ADDRESS = os.getenv("VAULTFUND_PRICE_FEED_ADDRESS", "0x0")
VRF_ADDRESS = os.getenv("VAULTFUND_VRF_ADDRESS", "0x0")
KEEPER_REGISTRY_ADDRESS = os.getenv("VAULTFUND_KEEPER_REGISTRY_ADDRESS", "0x0")

# Repayment schedule (30 days; demo deployments run with 300)
REPAYMENT_PERIOD_SEC = int(os.getenv("REPAYMENT_PERIOD_SEC", "2592000"))
REPAYMENT_DEFAULT_MONTHS = int(os.getenv("REPAYMENT_DEFAULT_MONTHS", "120"))

# Price multiplier band
MULTIPLIER_MIN = int(os.getenv("MULTIPLIER_MIN", "80"))
MULTIPLIER_MAX = int(os.getenv("MULTIPLIER_MAX", "120"))
MULTIPLIER_DEADBAND_BPS = int(os.getenv("MULTIPLIER_DEADBAND_BPS", "50"))
MULTIPLIER_SENSITIVITY = int(os.getenv("MULTIPLIER_SENSITIVITY", "1"))
PRICE_PEG = int(os.getenv("PRICE_PEG", "100000000"))
PRICE_DECIMALS = int(os.getenv("PRICE_DECIMALS", "8"))

# Lottery
LOTTERY_ENTRY_FEE = int(os.getenv("LOTTERY_ENTRY_FEE", "10000000"))

# Keeper loop (default disabled)
KEEPER_ENABLED = os.getenv("KEEPER_ENABLED", "false").lower() == "true"
KEEPER_INTERVAL_SEC = int(os.getenv("KEEPER_INTERVAL_SEC", "300"))

VERSION = "1.0.0"

NEUTRAL_MULTIPLIER = 100


@dataclass(frozen=True)
class MultiplierBand:
    min_multiplier: int = MULTIPLIER_MIN
    max_multiplier: int = MULTIPLIER_MAX
    deadband_bps: int = MULTIPLIER_DEADBAND_BPS
    sensitivity: int = MULTIPLIER_SENSITIVITY
    peg: int = PRICE_PEG
    decimals: int = PRICE_DECIMALS


@dataclass(frozen=True)
class EngineConfig:
    """Per-deployment settings. Constructed once, never mutated."""
    db_path: str = DB_PATH
    network_id: int = NETWORK_ID
    addresses: Dict[str, str] = field(default_factory=dict)
    period_length: int = REPAYMENT_PERIOD_SEC
    default_total_months: int = REPAYMENT_DEFAULT_MONTHS
    multiplier_band: MultiplierBand = field(default_factory=MultiplierBand)
    entry_fee: int = LOTTERY_ENTRY_FEE
    keeper_interval: int = KEEPER_INTERVAL_SEC


def load_config(**overrides) -> EngineConfig:
    """Build the deployment config from the environment, with keyword overrides."""
    values = {
        "db_path": os.getenv("VAULTFUND_DB_PATH", DB_PATH),
        "network_id": NETWORK_ID,
        "addresses": {
            "price_feed": PRICE_FEED_ADDRESS,
            "vrf_coordinator": VRF_ADDRESS,
            "keeper_registry": KEEPER_REGISTRY_ADDRESS,
        },
        "period_length": REPAYMENT_PERIOD_SEC,
        "default_total_months": REPAYMENT_DEFAULT_MONTHS,
        "multiplier_band": MultiplierBand(),
        "entry_fee": LOTTERY_ENTRY_FEE,
        "keeper_interval": KEEPER_INTERVAL_SEC,
    }
    values.update(overrides)
    return EngineConfig(**values)


def validate_config(config: EngineConfig) -> List[str]:
    """Validate a deployment config and return any issues."""
    issues = []
    band = config.multiplier_band

    if config.period_length < 1:
        issues.append("period_length must be >= 1 second")

    if config.default_total_months < 1:
        issues.append("default_total_months must be >= 1")

    if band.min_multiplier < 1 or band.min_multiplier > NEUTRAL_MULTIPLIER:
        issues.append(f"min_multiplier must be in [1, {NEUTRAL_MULTIPLIER}]")

    if band.max_multiplier < NEUTRAL_MULTIPLIER:
        issues.append(f"max_multiplier must be >= {NEUTRAL_MULTIPLIER}")

    if band.deadband_bps < 0:
        issues.append("deadband_bps cannot be negative")

    if band.sensitivity < 1:
        issues.append("sensitivity must be >= 1")

    if band.peg <= 0:
        issues.append("peg must be positive")

    if config.entry_fee < 0:
        issues.append("entry_fee cannot be negative")

    if config.keeper_interval < 1:
        issues.append("keeper_interval must be >= 1 second")

    return issues


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def is_keeper_enabled():
    """Check if the local keeper loop is enabled."""
    return KEEPER_ENABLED


def get_keeper_interval():
    """Get keeper poll interval in seconds."""
    return KEEPER_INTERVAL_SEC


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)
