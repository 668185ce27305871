"""
Lifecycle event log.
Events are written inside the transaction of the transition that causes them,
so a transition that rolls back never leaves an event behind.
"""

import json
import sqlite3
from typing import Dict, List, Optional

from .db import get_db
from .errors import require_int
from .schema import EngineEvent
from ..util.logging import sanitize_payload

VAULT_CREATED = "VaultCreated"
FUNDS_DEPOSITED = "FundsDeposited"
VAULT_FUNDED = "VaultFunded"
VAULT_ACTIVE = "VaultActive"
VAULT_CLOSED = "VaultClosed"
SCHEDULE_CREATED = "ScheduleCreated"
PAYMENT_PROCESSED = "PaymentProcessed"
MULTIPLIER_ADJUSTED = "MultiplierAdjusted"
ROUND_STARTED = "RoundStarted"
ROUND_ENTERED = "RoundEntered"
RANDOMNESS_REQUESTED = "RandomnessRequested"
ROUND_RESOLVED = "RoundResolved"

EVENT_KINDS = [
    VAULT_CREATED, FUNDS_DEPOSITED, VAULT_FUNDED, VAULT_ACTIVE, VAULT_CLOSED,
    SCHEDULE_CREATED, PAYMENT_PROCESSED, MULTIPLIER_ADJUSTED,
    ROUND_STARTED, ROUND_ENTERED, RANDOMNESS_REQUESTED, ROUND_RESOLVED,
]

MAX_EVENT_PAGE = 1000


class EventLog:
    """Append-only event table shared by all components."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def emit(self, conn: sqlite3.Connection, kind: str, ts: int, vault_id: Optional[int] = None,
             round_id: Optional[int] = None, payload: Dict = None) -> int:
        """Append an event using the caller's open transaction."""
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")

        cursor = conn.execute(
            "INSERT INTO events (kind, vault_id, round_id, payload, ts) VALUES (?, ?, ?, ?, ?)",
            (kind, vault_id, round_id, json.dumps(sanitize_payload(payload or {})), ts)
        )
        return cursor.lastrowid

    def list_events(self, kind: str = None, vault_id: int = None, round_id: int = None,
                    after_id: int = 0, limit: int = 100) -> List[EngineEvent]:
        """List events in emission order, optionally filtered."""
        require_int(after_id, "after_id", minimum=0)
        require_int(limit, "limit", minimum=1, maximum=MAX_EVENT_PAGE)
        if vault_id is not None:
            require_int(vault_id, "vault_id")
        if round_id is not None:
            require_int(round_id, "round_id")

        query = "SELECT id, kind, vault_id, round_id, payload, ts FROM events WHERE id > ?"
        params = [after_id]

        if kind:
            query += " AND kind = ?"
            params.append(kind)
        if vault_id is not None:
            query += " AND vault_id = ?"
            params.append(vault_id)
        if round_id is not None:
            query += " AND round_id = ?"
            params.append(round_id)

        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            EngineEvent(
                id=row["id"],
                kind=row["kind"],
                vault_id=row["vault_id"],
                round_id=row["round_id"],
                payload=json.loads(row["payload"]) if row["payload"] else {},
                ts=row["ts"]
            )
            for row in rows
        ]

    def count(self, kind: str = None, vault_id: int = None) -> int:
        """Count events of a kind, for monitoring and tests."""
        query = "SELECT COUNT(*) FROM events WHERE 1 = 1"
        params = []
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        if vault_id is not None:
            query += " AND vault_id = ?"
            params.append(vault_id)

        with get_db(self.db_path) as conn:
            return conn.execute(query, params).fetchone()[0]
