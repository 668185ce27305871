"""
Fixed-point contribution accounting.
The only code that writes vaults.total_deposited and
investor_positions.amount_deposited. No floats anywhere in this module.
"""

import sqlite3
from typing import Callable, List, Optional

from .db import get_db, transaction
from .errors import CapacityExceeded, ClaimTooEarly, InvalidInput, UnknownEntity, UnknownVault, require_amount
from .schema import InvestorPosition

CLAIM_KINDS = {"reward": "last_reward_claim", "return": "last_return_claim"}


class Ledger:
    """Per-vault and per-investor deposit bookkeeping."""

    def __init__(self, db_path: str, clock: Callable[[], int], period_length: int):
        self.db_path = db_path
        self.clock = clock
        self.period_length = period_length

    def record_deposit(self, vault_id: int, investor: str, amount: int,
                       conn: Optional[sqlite3.Connection] = None) -> int:
        """
        Credit `amount` to both the vault total and the investor position.

        Fails with CapacityExceeded when the vault total would pass its target.
        Both rows are written in one transaction; nothing is applied on failure.

        Returns:
            The vault's new total_deposited.
        """
        require_amount(amount)
        if not investor or not str(investor).strip():
            raise InvalidInput("investor identity is required")
        investor = str(investor).strip()

        with transaction(self.db_path, conn) as tx:
            row = tx.execute(
                "SELECT target_amount, total_deposited FROM vaults WHERE id = ?",
                (vault_id,)
            ).fetchone()
            if row is None:
                raise UnknownVault(f"Vault {vault_id} does not exist", vault_id=vault_id)

            target, total = row["target_amount"], row["total_deposited"]
            if total + amount > target:
                raise CapacityExceeded(
                    f"Deposit of {amount} exceeds remaining capacity {target - total} of vault {vault_id}",
                    vault_id=vault_id, remaining=target - total
                )

            now = self.clock()
            new_total = total + amount
            tx.execute(
                "UPDATE vaults SET total_deposited = ? WHERE id = ?",
                (new_total, vault_id)
            )
            tx.execute(
                '''
                INSERT INTO investor_positions
                    (vault_id, investor, amount_deposited, first_deposit_at, last_deposit_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (vault_id, investor) DO UPDATE SET
                    amount_deposited = amount_deposited + excluded.amount_deposited,
                    last_deposit_at = excluded.last_deposit_at
                ''',
                (vault_id, investor, amount, now, now)
            )
            return new_total

    def remaining_capacity(self, vault_id: int) -> int:
        """targetAmount - totalDeposited for a vault."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT target_amount - total_deposited AS remaining FROM vaults WHERE id = ?",
                (vault_id,)
            ).fetchone()
        if row is None:
            raise UnknownVault(f"Vault {vault_id} does not exist", vault_id=vault_id)
        return row["remaining"]

    def get_position(self, vault_id: int, investor: str) -> Optional[InvestorPosition]:
        """Get one investor's position in a vault, or None if they never deposited."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM investor_positions WHERE vault_id = ? AND investor = ?",
                (vault_id, str(investor).strip())
            ).fetchone()
        return InvestorPosition.from_row(row) if row else None

    def list_positions(self, vault_id: int) -> List[InvestorPosition]:
        """List all investor positions of a vault in first-deposit order."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM investor_positions WHERE vault_id = ? ORDER BY first_deposit_at, investor",
                (vault_id,)
            ).fetchall()
        return [InvestorPosition.from_row(row) for row in rows]

    def sum_positions(self, vault_id: int) -> int:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount_deposited), 0) FROM investor_positions WHERE vault_id = ?",
                (vault_id,)
            ).fetchone()
        return row[0]

    def record_claim(self, vault_id: int, investor: str, kind: str) -> InvestorPosition:
        """
        Stamp a reward/return claim for an investor.

        At most one claim of each kind per period, so the same interval can
        never be counted twice.
        """
        column = CLAIM_KINDS.get(kind)
        if column is None:
            raise InvalidInput(f"claim kind must be one of {sorted(CLAIM_KINDS)}, got {kind!r}")

        with transaction(self.db_path) as tx:
            row = tx.execute(
                f"SELECT {column} AS last_claim FROM investor_positions WHERE vault_id = ? AND investor = ?",
                (vault_id, str(investor).strip())
            ).fetchone()
            if row is None:
                raise UnknownEntity(
                    f"Investor {investor} has no position in vault {vault_id}",
                    vault_id=vault_id
                )

            now = self.clock()
            last_claim = row["last_claim"]
            if last_claim is not None and now < last_claim + self.period_length:
                raise ClaimTooEarly(
                    f"{kind} already claimed at {last_claim}; next claim allowed at {last_claim + self.period_length}",
                    vault_id=vault_id
                )

            tx.execute(
                f"UPDATE investor_positions SET {column} = ? WHERE vault_id = ? AND investor = ?",
                (now, vault_id, str(investor).strip())
            )
            position = tx.execute(
                "SELECT * FROM investor_positions WHERE vault_id = ? AND investor = ?",
                (vault_id, str(investor).strip())
            ).fetchone()
            return InvestorPosition.from_row(position)
