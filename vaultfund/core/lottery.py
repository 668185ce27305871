"""
Fair selection rounds.

    open -> resolving -> resolved

Vaults pay a fixed entry fee to join the open round; one externally supplied
random value picks the winner by index into the insertion-ordered entry list.
"""

import sqlite3
from typing import Callable, List, Optional, Tuple

from .db import get_db, transaction
from .errors import (
    AlreadyEntered,
    InvalidInput,
    InvalidStateTransition,
    NoParticipants,
    RoundAlreadyActive,
    RoundNotOpen,
    UnknownRound,
    UnknownVault,
    VaultEngineError,
)
from .events import EventLog, RANDOMNESS_REQUESTED, ROUND_ENTERED, ROUND_RESOLVED, ROUND_STARTED
from .schema import LotteryRound, RoundStatus
from ..util.logging import logger


def select_winner(participants: List[int], random_value: int) -> int:
    """Deterministic pick: random_value mod count, into the recorded order."""
    if not participants:
        raise NoParticipants("Cannot select a winner from an empty round")
    return participants[random_value % len(participants)]


class LotteryService:
    """Round lifecycle over a growing, ordered participant list."""

    def __init__(self, db_path: str, events: EventLog, clock: Callable[[], int], entry_fee: int):
        self.db_path = db_path
        self.events = events
        self.clock = clock
        self.entry_fee = entry_fee

    def _participants(self, conn: sqlite3.Connection, round_id: int) -> List[int]:
        rows = conn.execute(
            "SELECT vault_id FROM lottery_entries WHERE round_id = ? ORDER BY position ASC",
            (round_id,)
        ).fetchall()
        return [row["vault_id"] for row in rows]

    def _load(self, conn: sqlite3.Connection, round_id: int) -> Optional[LotteryRound]:
        row = conn.execute("SELECT * FROM lottery_rounds WHERE id = ?", (round_id,)).fetchone()
        if row is None:
            return None
        return LotteryRound.from_row(row, self._participants(conn, round_id))

    def _active(self, conn: sqlite3.Connection) -> Optional[LotteryRound]:
        row = conn.execute(
            "SELECT id FROM lottery_rounds WHERE is_active ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return self._load(conn, row["id"]) if row else None

    def start_round(self) -> LotteryRound:
        """Open a new round with no participants and an empty prize pool."""
        with transaction(self.db_path) as tx:
            active = self._active(tx)
            if active is not None:
                logger.log_lottery("start", active.round_id, status="rejected")
                raise RoundAlreadyActive(f"Round {active.round_id} is still {active.status.value}")

            now = self.clock()
            cursor = tx.execute(
                "INSERT INTO lottery_rounds (status, prize_pool, is_active, started_at) VALUES (?, 0, TRUE, ?)",
                (RoundStatus.OPEN.value, now)
            )
            round_id = cursor.lastrowid
            self.events.emit(tx, ROUND_STARTED, ts=now, round_id=round_id)
            lottery_round = self._load(tx, round_id)

        logger.log_lottery("start", round_id)
        return lottery_round

    def enter(self, vault_id: int) -> LotteryRound:
        """
        Enter a vault into the open round.

        The entry fee is collected in the same transaction as the entry, so a
        rejected entry never charges the fee.
        """
        try:
            with transaction(self.db_path) as tx:
                active = self._active(tx)
                if active is None or active.status != RoundStatus.OPEN:
                    raise RoundNotOpen("No lottery round is accepting entries")

                vault = tx.execute("SELECT id, beneficiary, is_active FROM vaults WHERE id = ?", (vault_id,)).fetchone()
                if vault is None:
                    raise UnknownVault(f"Vault {vault_id} does not exist", vault_id=vault_id)
                if not vault["is_active"]:
                    raise InvalidStateTransition(f"Vault {vault_id} is closed", vault_id=vault_id)
                if vault_id in active.participants:
                    raise AlreadyEntered(f"Vault {vault_id} already entered round {active.round_id}", vault_id=vault_id)

                now = self.clock()
                tx.execute(
                    "INSERT INTO lottery_entries (round_id, vault_id, position, fee, entered_at) VALUES (?, ?, ?, ?, ?)",
                    (active.round_id, vault_id, active.participant_count, self.entry_fee, now)
                )
                tx.execute(
                    "UPDATE lottery_rounds SET prize_pool = prize_pool + ? WHERE id = ?",
                    (self.entry_fee, active.round_id)
                )
                tx.execute(
                    "INSERT INTO transfers (kind, vault_id, round_id, counterparty, amount, ts) VALUES ('entry_fee', ?, ?, ?, ?, ?)",
                    (vault_id, active.round_id, vault["beneficiary"], self.entry_fee, now)
                )
                self.events.emit(tx, ROUND_ENTERED, ts=now, vault_id=vault_id, round_id=active.round_id, payload={
                    "position": active.participant_count,
                    "fee": self.entry_fee
                })
                lottery_round = self._load(tx, active.round_id)
        except VaultEngineError as e:
            logger.log_rejection("lottery.enter", e.error_type, e.message, {"vault_id": vault_id})
            raise

        logger.log_lottery("enter", lottery_round.round_id, {"vault_id": vault_id, "prize_pool": lottery_round.prize_pool})
        return lottery_round

    def can_participate(self, vault_id: int) -> Tuple[bool, str]:
        """Read-only eligibility check with a human-readable reason."""
        with get_db(self.db_path) as conn:
            vault = conn.execute("SELECT is_active FROM vaults WHERE id = ?", (vault_id,)).fetchone()
            if vault is None:
                return False, "Vault does not exist"
            if not vault["is_active"]:
                return False, "Vault is closed"
            active = self._active(conn)

        if active is None or active.status != RoundStatus.OPEN:
            return False, "No open lottery round"
        if vault_id in active.participants:
            return False, "Vault already entered this round"
        return True, "Eligible"

    def request_randomness(self) -> LotteryRound:
        """Close entries on the open round while the random value is fetched."""
        with transaction(self.db_path) as tx:
            active = self._active(tx)
            if active is None or active.status != RoundStatus.OPEN:
                raise RoundNotOpen("No open lottery round to request randomness for")
            if not active.participants:
                raise NoParticipants(f"Round {active.round_id} has no participants")

            tx.execute(
                "UPDATE lottery_rounds SET status = ? WHERE id = ?",
                (RoundStatus.RESOLVING.value, active.round_id)
            )
            self.events.emit(tx, RANDOMNESS_REQUESTED, ts=self.clock(), round_id=active.round_id, payload={
                "participant_count": active.participant_count
            })
            lottery_round = self._load(tx, active.round_id)

        logger.log_lottery("request_randomness", lottery_round.round_id)
        return lottery_round

    def resolve_round(self, random_value: int, round_id: Optional[int] = None) -> LotteryRound:
        """
        Consume one random value and pay the prize pool to the selected vault.

        A round resolves once; any later call for it is rejected.
        """
        if isinstance(random_value, bool) or not isinstance(random_value, int) or random_value < 0:
            raise InvalidInput(f"random value must be an unsigned integer, got {random_value!r}")

        try:
            with transaction(self.db_path) as tx:
                if round_id is None:
                    lottery_round = self._active(tx)
                    if lottery_round is None:
                        raise RoundNotOpen("No active lottery round to resolve")
                else:
                    lottery_round = self._load(tx, round_id)
                    if lottery_round is None:
                        raise UnknownRound(f"Round {round_id} does not exist")

                if not lottery_round.is_active or lottery_round.status == RoundStatus.RESOLVED:
                    raise RoundNotOpen(f"Round {lottery_round.round_id} is already resolved")
                if not lottery_round.participants:
                    raise NoParticipants(f"Round {lottery_round.round_id} has no participants")

                winner = select_winner(lottery_round.participants, random_value)
                now = self.clock()
                tx.execute(
                    '''
                    UPDATE lottery_rounds
                    SET status = ?, is_active = FALSE, winner_vault_id = ?, random_value = ?, resolved_at = ?
                    WHERE id = ?
                    ''',
                    (RoundStatus.RESOLVED.value, winner, str(random_value), now, lottery_round.round_id)
                )
                tx.execute(
                    "INSERT INTO transfers (kind, vault_id, round_id, amount, ts) VALUES ('prize', ?, ?, ?, ?)",
                    (winner, lottery_round.round_id, lottery_round.prize_pool, now)
                )
                self.events.emit(tx, ROUND_RESOLVED, ts=now, vault_id=winner, round_id=lottery_round.round_id, payload={
                    "winner_vault_id": winner,
                    "prize_amount": lottery_round.prize_pool,
                    "participant_count": lottery_round.participant_count
                })
                resolved = self._load(tx, lottery_round.round_id)
        except VaultEngineError as e:
            logger.log_rejection("lottery.resolve", e.error_type, e.message, {"round_id": round_id})
            raise

        logger.log_lottery("resolve", resolved.round_id, {"winner": winner, "prize": resolved.prize_pool})
        return resolved

    def current_round(self) -> Optional[LotteryRound]:
        """The most recent round, active or not."""
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT id FROM lottery_rounds ORDER BY id DESC LIMIT 1").fetchone()
            return self._load(conn, row["id"]) if row else None

    def get_round(self, round_id: int) -> LotteryRound:
        with get_db(self.db_path) as conn:
            lottery_round = self._load(conn, round_id)
        if lottery_round is None:
            raise UnknownRound(f"Round {round_id} does not exist")
        return lottery_round

    def get_participants(self, round_id: int) -> List[int]:
        return self.get_round(round_id).participants
