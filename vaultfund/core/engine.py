"""
Wires the storage, ledger, pricing, vault, repayment and lottery components
around one database and one clock.
"""

import time
from typing import Callable, Optional

from .config import EngineConfig, load_config, validate_config
from .db import health_check, init_db
from .events import EventLog
from .ledger import Ledger
from .lottery import LotteryService
from .pricing import PriceMultiplierService
from .repayment import RepaymentScheduler
from .vaults import VaultService
from ..util.logging import logger


def system_clock() -> int:
    """Wall-clock Unix seconds."""
    return int(time.time())


class FundingEngine:
    """
    One deployment of the funding engine.

    Every component shares the same EngineConfig and clock; tests pass a
    controllable clock to move time across repayment periods.
    """

    def __init__(self, config: Optional[EngineConfig] = None, clock: Optional[Callable[[], int]] = None):
        self.config = config or load_config()
        self.clock = clock or system_clock

        issues = validate_config(self.config)
        if issues:
            raise ValueError(f"Engine configuration invalid: {issues}")

        init_db(self.config.db_path)

        db_path = self.config.db_path
        self.events = EventLog(db_path)
        self.ledger = Ledger(db_path, self.clock, self.config.period_length)
        self.pricing = PriceMultiplierService(
            db_path,
            self.config.multiplier_band,
            self.events,
            self.clock,
            feed_address=self.config.addresses.get("price_feed", "0x0")
        )
        self.vaults = VaultService(db_path, self.ledger, self.pricing, self.events, self.clock)
        self.repayment = RepaymentScheduler(
            db_path,
            self.vaults,
            self.events,
            self.clock,
            self.config.period_length,
            self.config.default_total_months
        )
        self.lottery = LotteryService(db_path, self.events, self.clock, self.config.entry_fee)

        logger.log_operation("engine.init", "success", {
            "db_path": db_path,
            "network_id": self.config.network_id,
            "period_length": self.config.period_length
        })

    def health(self) -> bool:
        return health_check(self.config.db_path)
