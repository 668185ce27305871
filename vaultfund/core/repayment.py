"""
Repayment scheduler and the automation poll protocol.

A keeper calls check_upkeep() as often as it likes; it never writes.
perform_upkeep() re-derives the same condition inside a write transaction and
advances each due schedule by exactly one period. A caller that lost a race,
or that passed stale performData, finds nothing due and the call is a no-op.
"""

import json
import sqlite3
from typing import Callable, Dict, List, Optional, Tuple

from .db import get_db, transaction
from .errors import (
    AlreadyScheduled,
    InvalidStateTransition,
    NotYetFunded,
    StalePrecondition,
    UnknownSchedule,
    UnknownVault,
    VaultEngineError,
    require_int,
)
from .events import EventLog, PAYMENT_PROCESSED, SCHEDULE_CREATED
from .schema import RepaymentPayment, RepaymentSchedule, Vault, VaultStatus
from .vaults import VaultService
from ..util.logging import logger


def installment_for(total_deposited: int, total_months: int) -> int:
    """ceil(total / months): the sponsor never under-pays; the last installment absorbs the slack."""
    return -(-total_deposited // total_months)


def encode_perform_data(vault_ids: List[int]) -> bytes:
    return json.dumps({"vault_ids": vault_ids}).encode("utf-8")


def decode_perform_data(perform_data) -> List[int]:
    """Best-effort decode of a performData hint; anything unreadable yields []."""
    if not perform_data:
        return []
    try:
        if isinstance(perform_data, (bytes, bytearray)):
            perform_data = perform_data.decode("utf-8")
        decoded = json.loads(perform_data)
    except (UnicodeDecodeError, ValueError, TypeError):
        return []

    ids = decoded.get("vault_ids") if isinstance(decoded, dict) else None
    if not isinstance(ids, list):
        return []
    return [i for i in ids if isinstance(i, int) and not isinstance(i, bool)]


class RepaymentScheduler:
    """One schedule per vault; NoSchedule -> Active -> Exhausted."""

    def __init__(self, db_path: str, vaults: VaultService, events: EventLog,
                 clock: Callable[[], int], period_length: int, default_total_months: int = 120):
        self.db_path = db_path
        self.vaults = vaults
        self.events = events
        self.clock = clock
        self.period_length = period_length
        self.default_total_months = default_total_months

    def _load(self, conn: sqlite3.Connection, vault_id: int) -> Optional[RepaymentSchedule]:
        row = conn.execute("SELECT * FROM repayment_schedules WHERE vault_id = ?", (vault_id,)).fetchone()
        return RepaymentSchedule.from_row(row) if row else None

    def create_schedule(self, vault_id: int, total_months: Optional[int] = None) -> RepaymentSchedule:
        """
        Derive the repayment plan for a fully funded vault and activate it.

        Succeeds at most once per vault: a second call raises AlreadyScheduled
        and leaves the first schedule untouched.
        """
        if total_months is None:
            total_months = self.default_total_months
        require_int(total_months, "total_months", minimum=1)

        try:
            with transaction(self.db_path) as tx:
                row = tx.execute("SELECT * FROM vaults WHERE id = ?", (vault_id,)).fetchone()
                if row is None:
                    raise UnknownVault(f"Vault {vault_id} does not exist", vault_id=vault_id)
                vault = Vault.from_row(row)

                if self._load(tx, vault_id) is not None:
                    raise AlreadyScheduled(f"Vault {vault_id} already has a repayment schedule", vault_id=vault_id)
                if vault.status == VaultStatus.CLOSED:
                    raise InvalidStateTransition(f"Vault {vault_id} is closed", vault_id=vault_id)
                if vault.status != VaultStatus.FUNDED or vault.total_deposited < vault.target_amount:
                    raise NotYetFunded(
                        f"Vault {vault_id} has {vault.total_deposited} of {vault.target_amount} deposited",
                        vault_id=vault_id
                    )

                now = self.clock()
                monthly_amount = installment_for(vault.total_deposited, total_months)
                tx.execute(
                    '''
                    INSERT INTO repayment_schedules
                        (vault_id, monthly_amount, total_months, paid_months, next_payment_due,
                         total_owed, total_paid, is_active, created_at)
                    VALUES (?, ?, ?, 0, ?, ?, 0, TRUE, ?)
                    ''',
                    (vault_id, monthly_amount, total_months, now + self.period_length,
                     vault.total_deposited, now)
                )
                self.events.emit(tx, SCHEDULE_CREATED, ts=now, vault_id=vault_id, payload={
                    "monthly_amount": monthly_amount,
                    "total_months": total_months,
                    "total_owed": vault.total_deposited
                })
                self.vaults.activate(tx, vault_id)
                schedule = self._load(tx, vault_id)
        except VaultEngineError as e:
            logger.log_rejection("schedule.create", e.error_type, e.message, {"vault_id": vault_id})
            raise

        logger.log_operation("schedule.create", "success", {
            "vault_id": vault_id,
            "monthly_amount": schedule.monthly_amount,
            "total_months": schedule.total_months,
            "next_payment_due": schedule.next_payment_due
        })
        return schedule

    def check_upkeep(self, check_data: bytes = b"") -> Tuple[bool, bytes]:
        """
        Read-only predicate: is any active schedule due right now?

        Returns (upkeep_needed, perform_data) where perform_data lists the due
        vault ids. Safe to call any number of times.
        """
        due = self._due_vault_ids(self.clock())
        return bool(due), encode_perform_data(due)

    def check_upkeep_for(self, vault_id: int) -> bool:
        with get_db(self.db_path) as conn:
            schedule = self._load(conn, vault_id)
        return schedule is not None and schedule.is_due(self.clock())

    def perform_upkeep(self, perform_data: bytes = b"") -> List[RepaymentPayment]:
        """
        Advance every due schedule by at most one period.

        perform_data only narrows which vaults are looked at; each one is
        re-validated under the write lock. Vaults that are no longer due are
        skipped silently. Returns the payments actually recorded.
        """
        candidates = decode_perform_data(perform_data)
        if not candidates:
            candidates = self._due_vault_ids(self.clock())

        processed = []
        for vault_id in dict.fromkeys(candidates):
            try:
                processed.append(self._advance(vault_id))
            except StalePrecondition as e:
                logger.log_upkeep(vault_id, 0, 0, status="stale", details={"reason": e.message})
        return processed

    def _advance(self, vault_id: int) -> RepaymentPayment:
        with transaction(self.db_path) as tx:
            now = self.clock()
            schedule = self._load(tx, vault_id)
            if schedule is None:
                raise StalePrecondition(f"Vault {vault_id} has no schedule")
            if not schedule.is_due(now):
                raise StalePrecondition(f"Vault {vault_id} is not due (next payment at {schedule.next_payment_due})")

            month = schedule.paid_months + 1
            amount = schedule.next_installment()
            exhausted = month == schedule.total_months

            cursor = tx.execute(
                '''
                UPDATE repayment_schedules
                SET paid_months = ?, next_payment_due = ?, total_paid = total_paid + ?, is_active = ?
                WHERE vault_id = ? AND paid_months = ?
                ''',
                (month, schedule.next_payment_due + self.period_length, amount, not exhausted,
                 vault_id, schedule.paid_months)
            )
            if cursor.rowcount != 1:
                raise StalePrecondition(f"Vault {vault_id} period {month} was advanced concurrently")

            tx.execute(
                "INSERT INTO repayment_payments (vault_id, month, amount, due_at, paid_at) VALUES (?, ?, ?, ?, ?)",
                (vault_id, month, amount, schedule.next_payment_due, now)
            )
            beneficiary = tx.execute("SELECT beneficiary FROM vaults WHERE id = ?", (vault_id,)).fetchone()
            tx.execute(
                "INSERT INTO transfers (kind, vault_id, counterparty, amount, ts) VALUES ('repayment', ?, ?, ?, ?)",
                (vault_id, beneficiary["beneficiary"] if beneficiary else None, amount, now)
            )
            self.events.emit(tx, PAYMENT_PROCESSED, ts=now, vault_id=vault_id, payload={
                "month": month,
                "amount": amount,
                "due_at": schedule.next_payment_due,
                "remaining_months": schedule.total_months - month
            })

            if exhausted:
                self.vaults.mark_closed(tx, vault_id, "repaid")

            payment = RepaymentPayment(
                vault_id=vault_id,
                month=month,
                amount=amount,
                due_at=schedule.next_payment_due,
                paid_at=now
            )

        logger.log_upkeep(vault_id, month, amount, details={"exhausted": exhausted})
        return payment

    def _due_vault_ids(self, now: int) -> List[int]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT vault_id FROM repayment_schedules WHERE is_active AND next_payment_due <= ? ORDER BY vault_id",
                (now,)
            ).fetchall()
        return [row["vault_id"] for row in rows]

    def get_schedule(self, vault_id: int) -> RepaymentSchedule:
        with get_db(self.db_path) as conn:
            schedule = self._load(conn, vault_id)
        if schedule is None:
            raise UnknownSchedule(f"Vault {vault_id} has no repayment schedule", vault_id=vault_id)
        return schedule

    def schedule_status(self, vault_id: int) -> Dict:
        """Schedule plus derived fields used by monitoring."""
        schedule = self.get_schedule(vault_id)
        now = self.clock()
        return {
            "schedule": schedule,
            "remaining_owed": schedule.remaining_owed,
            "is_due": schedule.is_due(now),
            "overdue_periods": schedule.overdue_periods(now, self.period_length)
        }

    def get_active_schedules(self) -> List[int]:
        """All vault ids whose schedule is still active."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT vault_id FROM repayment_schedules WHERE is_active ORDER BY vault_id"
            ).fetchall()
        return [row["vault_id"] for row in rows]

    def list_payments(self, vault_id: int) -> List[RepaymentPayment]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM repayment_payments WHERE vault_id = ? ORDER BY month",
                (vault_id,)
            ).fetchall()
        return [RepaymentPayment.from_row(row) for row in rows]
