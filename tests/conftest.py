"""
Shared fixtures: a throwaway database per test and a clock the test controls.
"""

import pytest

from vaultfund.core.config import MultiplierBand, load_config
from vaultfund.core.engine import FundingEngine

PERIOD = 2_592_000
START_TIME = 1_700_000_000


class FakeClock:
    """Manually advanced Unix-seconds clock."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return load_config(
        db_path=str(tmp_path / "vaultfund.db"),
        period_length=PERIOD,
        default_total_months=120,
        multiplier_band=MultiplierBand(
            min_multiplier=80,
            max_multiplier=120,
            deadband_bps=50,
            sensitivity=1,
            peg=100_000000,
            decimals=8
        ),
        entry_fee=10_000000
    )


@pytest.fixture
def engine(config, clock):
    return FundingEngine(config, clock=clock)


@pytest.fixture
def funded_vault(engine):
    """A vault of 30,000 units (6 decimals) funded to its target."""
    vault = engine.vaults.create_vault("0xBeneficiary", 30_000_000000, metadata="ipfs://student")
    engine.vaults.invest(vault.id, "0xInvestorA", 10_000_000000)
    engine.vaults.invest(vault.id, "0xInvestorB", 20_000_000000)
    return engine.vaults.get_vault(vault.id)
