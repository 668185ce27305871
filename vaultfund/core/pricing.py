"""
Price-derived investment multiplier.
Maps an oracle price's deviation from the reference peg into a bounded
percentage band, with a deadband that snaps small deviations back to neutral.
"""

import sqlite3
from typing import Callable, Dict, Optional

from .config import NEUTRAL_MULTIPLIER, MultiplierBand
from .db import get_db, transaction
from .errors import InvalidInput, require_int
from .events import EventLog, MULTIPLIER_ADJUSTED
from .schema import PriceMultiplierState, PriceStatus
from ..util.logging import logger


def _div_toward_zero(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // denominator
    return quotient if numerator >= 0 else -quotient


def deviation_bps(price: int, band: MultiplierBand) -> int:
    """Signed deviation of `price` from the peg in basis points, truncated toward zero."""
    return _div_toward_zero((price - band.peg) * 10000, band.peg)


def compute_multiplier(price: int, band: MultiplierBand) -> int:
    """
    Deterministic multiplier for an observed price.

    Inside the deadband the result is exactly neutral (100). Outside it the
    multiplier moves `sensitivity` percentage points per whole percent of
    deviation and is clamped to [min_multiplier, max_multiplier].
    """
    if abs(deviation_bps(price, band)) < band.deadband_bps:
        return NEUTRAL_MULTIPLIER

    delta = _div_toward_zero((price - band.peg) * 100 * band.sensitivity, band.peg)
    return max(band.min_multiplier, min(band.max_multiplier, NEUTRAL_MULTIPLIER + delta))


def classify_price(price: Optional[int], band: MultiplierBand) -> PriceStatus:
    if price is None:
        return PriceStatus.NO_DATA
    deviation = deviation_bps(price, band)
    if abs(deviation) < band.deadband_bps:
        return PriceStatus.STABLE
    return PriceStatus.ABOVE_PEG if deviation > 0 else PriceStatus.BELOW_PEG


def apply_multiplier(base_amount: int, multiplier: int) -> int:
    """base * multiplier / 100, rounding an exact half down and anything above it up."""
    quotient, remainder = divmod(base_amount * multiplier, 100)
    return quotient + 1 if remainder > 50 else quotient


class PriceMultiplierService:
    """Shared multiplier state, written only by the oracle observation path."""

    def __init__(self, db_path: str, band: MultiplierBand, events: EventLog,
                 clock: Callable[[], int], feed_address: str = "0x0"):
        self.db_path = db_path
        self.band = band
        self.events = events
        self.clock = clock
        self.feed_address = feed_address

    def _read_state(self, conn: sqlite3.Connection) -> PriceMultiplierState:
        # Single-row read: price, timestamp and multiplier always come from one write
        row = conn.execute(
            "SELECT last_price, last_update, multiplier FROM price_state WHERE id = 1"
        ).fetchone()
        if row is None:
            return PriceMultiplierState(
                last_observed_price=None,
                last_update_timestamp=None,
                current_multiplier=NEUTRAL_MULTIPLIER,
                status=PriceStatus.NO_DATA
            )
        return PriceMultiplierState(
            last_observed_price=row["last_price"],
            last_update_timestamp=row["last_update"],
            current_multiplier=row["multiplier"],
            status=classify_price(row["last_price"], self.band)
        )

    def snapshot(self, conn: Optional[sqlite3.Connection] = None) -> PriceMultiplierState:
        """Consistent view of (price, timestamp, multiplier)."""
        if conn is not None:
            return self._read_state(conn)
        with get_db(self.db_path) as own:
            return self._read_state(own)

    def observe(self, raw_price: int, timestamp: Optional[int] = None) -> PriceMultiplierState:
        """
        Record an oracle price and recompute the multiplier.

        Observations older than the stored one are ignored; an observation at
        the same timestamp replaces it (latest wins). Arbitrarily long gaps
        between observations are fine.
        """
        require_int(raw_price, "price")
        if timestamp is None:
            timestamp = self.clock()
        require_int(timestamp, "timestamp", minimum=0)

        multiplier = compute_multiplier(raw_price, self.band)

        with transaction(self.db_path) as tx:
            previous = self._read_state(tx)
            if previous.has_data and timestamp < previous.last_update_timestamp:
                logger.log_price_observation(raw_price, timestamp, previous.current_multiplier, status="ignored")
                return previous

            tx.execute(
                '''
                INSERT INTO price_state (id, last_price, last_update, multiplier) VALUES (1, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    last_price = excluded.last_price,
                    last_update = excluded.last_update,
                    multiplier = excluded.multiplier
                ''',
                (raw_price, timestamp, multiplier)
            )

            if multiplier != previous.current_multiplier:
                self.events.emit(tx, MULTIPLIER_ADJUSTED, ts=self.clock(), payload={
                    "previous_multiplier": previous.current_multiplier,
                    "new_multiplier": multiplier,
                    "trigger_price": raw_price
                })

            state = self._read_state(tx)

        logger.log_price_observation(raw_price, timestamp, multiplier)
        return state

    def current_multiplier(self) -> int:
        return self.snapshot().current_multiplier

    def scale(self, base_amount: int, conn: Optional[sqlite3.Connection] = None) -> int:
        """
        Scale a requested investment by the current multiplier.

        With no observation ever recorded the multiplier is neutral and the
        amount comes back unchanged; missing oracle data never blocks funding.
        """
        if isinstance(base_amount, bool) or not isinstance(base_amount, int) or base_amount < 0:
            raise InvalidInput(f"base amount must be a non-negative integer, got {base_amount!r}")

        state = self.snapshot(conn)
        if not state.has_data:
            return base_amount
        return apply_multiplier(base_amount, state.current_multiplier)

    def price_status(self) -> PriceStatus:
        return self.snapshot().status

    def simulate(self, base_amount: int) -> Dict:
        """Preview what an investment of `base_amount` would credit right now."""
        state = self.snapshot()
        return {
            "adjusted_amount": self.scale(base_amount),
            "multiplier": state.current_multiplier,
            "price_status": state.status.value
        }

    def feed_info(self) -> Dict:
        state = self.snapshot()
        return {
            "feed_address": self.feed_address,
            "latest_price": state.last_observed_price,
            "last_update": state.last_update_timestamp,
            "decimals": self.band.decimals,
            "multiplier": state.current_multiplier
        }
