"""
Vault lifecycle state machine.

    created -> funding -> funded -> active -> closed

Deposits move a vault through created/funding/funded; schedule creation
activates it; the final repayment (or an administrative closure) closes it.
Each transition emits its event exactly once, in the same transaction.
"""

import sqlite3
from dataclasses import dataclass
from typing import Callable, List, Optional

from .db import get_db, transaction
from .errors import (
    InvalidInput,
    InvalidStateTransition,
    NotYetFunded,
    UnknownVault,
    VaultEngineError,
    VaultNotAcceptingDeposits,
    require_amount,
    require_int,
)
from .events import EventLog, FUNDS_DEPOSITED, VAULT_ACTIVE, VAULT_CLOSED, VAULT_CREATED, VAULT_FUNDED
from .ledger import Ledger
from .pricing import PriceMultiplierService
from .schema import InvestorPosition, Vault, VaultStatus
from ..util.logging import logger

DEPOSIT_STATES = (VaultStatus.CREATED, VaultStatus.FUNDING, VaultStatus.FUNDED)


@dataclass
class DepositResult:
    vault: Vault
    position: InvestorPosition
    requested_amount: int
    credited_amount: int
    multiplier: int


class VaultService:
    """Owns vault rows and authorizes every write the ledger makes to them."""

    def __init__(self, db_path: str, ledger: Ledger, pricing: PriceMultiplierService,
                 events: EventLog, clock: Callable[[], int]):
        self.db_path = db_path
        self.ledger = ledger
        self.pricing = pricing
        self.events = events
        self.clock = clock

    def _load(self, conn: sqlite3.Connection, vault_id: int) -> Vault:
        row = conn.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
        if row is None:
            raise UnknownVault(f"Vault {vault_id} does not exist", vault_id=vault_id)
        return Vault.from_row(row)

    def _set_status(self, conn: sqlite3.Connection, vault: Vault, new_status: VaultStatus):
        conn.execute("UPDATE vaults SET status = ? WHERE id = ?", (new_status.value, vault.id))
        logger.log_state_transition("vault", vault.id, vault.status.value, new_status.value)

    def create_vault(self, beneficiary: str, target_amount: int, metadata: str = "",
                     study_duration: int = 0) -> Vault:
        """Open a new funding campaign for one beneficiary."""
        if not beneficiary or not str(beneficiary).strip():
            raise InvalidInput("beneficiary is required")
        try:
            require_amount(target_amount, "target_amount")
        except InvalidInput as e:
            raise InvalidInput(f"Invalid target: {e.message}") from e
        require_int(study_duration, "study_duration", minimum=0)

        now = self.clock()
        with transaction(self.db_path) as tx:
            cursor = tx.execute(
                '''
                INSERT INTO vaults (beneficiary, target_amount, metadata, study_duration, status, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, TRUE, ?)
                ''',
                (str(beneficiary).strip(), target_amount, metadata or "", study_duration,
                 VaultStatus.CREATED.value, now)
            )
            vault_id = cursor.lastrowid
            self.events.emit(tx, VAULT_CREATED, ts=now, vault_id=vault_id, payload={
                "beneficiary": str(beneficiary).strip(),
                "target_amount": target_amount,
                "metadata": metadata or ""
            })
            vault = self._load(tx, vault_id)

        logger.log_operation("vault.create", "success", {"vault_id": vault_id, "target_amount": target_amount})
        return vault

    def invest(self, vault_id: int, investor: str, requested_amount: int) -> DepositResult:
        """
        Scale a requested investment by the price multiplier and credit it.

        A scaled amount that would overshoot the target is rejected with
        CapacityExceeded, never truncated; the caller resubmits a smaller amount.
        """
        require_amount(requested_amount, "requested_amount")

        try:
            with transaction(self.db_path) as tx:
                vault = self._load(tx, vault_id)
                if not vault.is_active or vault.status not in DEPOSIT_STATES:
                    raise VaultNotAcceptingDeposits(
                        f"Vault {vault_id} is {vault.status.value} and no longer accepts deposits",
                        vault_id=vault_id
                    )

                multiplier = self.pricing.snapshot(tx).current_multiplier
                credited = self.pricing.scale(requested_amount, conn=tx)
                if credited <= 0:
                    raise InvalidInput(f"Requested amount {requested_amount} scales to zero")

                new_total = self.ledger.record_deposit(vault_id, investor, credited, conn=tx)
                now = self.clock()
                self.events.emit(tx, FUNDS_DEPOSITED, ts=now, vault_id=vault_id, payload={
                    "investor": str(investor).strip(),
                    "requested": requested_amount,
                    "amount": credited,
                    "multiplier": multiplier
                })

                if vault.status == VaultStatus.CREATED and new_total < vault.target_amount:
                    self._set_status(tx, vault, VaultStatus.FUNDING)
                elif new_total == vault.target_amount:
                    self._set_status(tx, vault, VaultStatus.FUNDED)
                    self.events.emit(tx, VAULT_FUNDED, ts=now, vault_id=vault_id, payload={
                        "total_deposited": new_total
                    })

                updated = self._load(tx, vault_id)
                position = InvestorPosition.from_row(tx.execute(
                    "SELECT * FROM investor_positions WHERE vault_id = ? AND investor = ?",
                    (vault_id, str(investor).strip())
                ).fetchone())
        except VaultEngineError as e:
            logger.log_rejection("vault.invest", e.error_type, e.message, {"vault_id": vault_id})
            raise

        logger.log_deposit(vault_id, str(investor).strip(), requested_amount, credited)
        return DepositResult(
            vault=updated,
            position=position,
            requested_amount=requested_amount,
            credited_amount=credited,
            multiplier=multiplier
        )

    def activate(self, conn: sqlite3.Connection, vault_id: int) -> Vault:
        """funded -> active; called by the scheduler inside its transaction."""
        vault = self._load(conn, vault_id)
        if vault.status != VaultStatus.FUNDED:
            raise NotYetFunded(
                f"Vault {vault_id} is {vault.status.value}; only a funded vault can be scheduled",
                vault_id=vault_id
            )
        self._set_status(conn, vault, VaultStatus.ACTIVE)
        self.events.emit(conn, VAULT_ACTIVE, ts=self.clock(), vault_id=vault_id)
        return self._load(conn, vault_id)

    def mark_closed(self, conn: sqlite3.Connection, vault_id: int, reason: str) -> Vault:
        """Any open state -> closed, inside the caller's transaction."""
        vault = self._load(conn, vault_id)
        if vault.status == VaultStatus.CLOSED:
            raise InvalidStateTransition(f"Vault {vault_id} is already closed", vault_id=vault_id)

        now = self.clock()
        conn.execute(
            "UPDATE vaults SET status = ?, is_active = FALSE, closed_at = ? WHERE id = ?",
            (VaultStatus.CLOSED.value, now, vault_id)
        )
        logger.log_state_transition("vault", vault_id, vault.status.value, VaultStatus.CLOSED.value)
        self.events.emit(conn, VAULT_CLOSED, ts=now, vault_id=vault_id, payload={"reason": reason})
        return self._load(conn, vault_id)

    def close_vault(self, vault_id: int, reason: str = "administrative") -> Vault:
        """Administrative closure; also stops any repayment schedule the vault has."""
        with transaction(self.db_path) as tx:
            self._load(tx, vault_id)
            tx.execute("UPDATE repayment_schedules SET is_active = FALSE WHERE vault_id = ?", (vault_id,))
            return self.mark_closed(tx, vault_id, reason)

    def get_vault(self, vault_id: int) -> Vault:
        with get_db(self.db_path) as conn:
            return self._load(conn, vault_id)

    def list_vaults(self, status: Optional[VaultStatus] = None) -> List[Vault]:
        query = "SELECT * FROM vaults"
        params = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(VaultStatus(status).value)
        query += " ORDER BY id ASC"

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [Vault.from_row(row) for row in rows]
