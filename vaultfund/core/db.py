"""
SQLite storage for vaults, positions, schedules, price state and lottery rounds.
Every state-changing operation runs inside a single BEGIN IMMEDIATE transaction.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from .config import DB_PATH, ensure_db_directory

REQUIRED_TABLES = [
    'vaults',
    'investor_positions',
    'repayment_schedules',
    'repayment_payments',
    'price_state',
    'lottery_rounds',
    'lottery_entries',
    'transfers',
    'events',
]


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection in autocommit mode."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str = None, conn: Optional[sqlite3.Connection] = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Run a block as one indivisible write.

    BEGIN IMMEDIATE takes the database write lock up front, so concurrent
    callers serialize and every precondition read inside the block is current.
    Passing an existing connection joins the caller's transaction instead.
    """
    if conn is not None:
        yield conn
        return

    with get_db(db_path) as own:
        own.execute("BEGIN IMMEDIATE")
        try:
            yield own
        except BaseException:
            own.execute("ROLLBACK")
            raise
        else:
            own.execute("COMMIT")


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS vaults (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                beneficiary TEXT NOT NULL,
                target_amount INTEGER NOT NULL CHECK (target_amount > 0),
                total_deposited INTEGER NOT NULL DEFAULT 0
                    CHECK (total_deposited >= 0 AND total_deposited <= target_amount),
                metadata TEXT NOT NULL DEFAULT '',
                study_duration INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'created',
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at INTEGER NOT NULL,
                closed_at INTEGER
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS investor_positions (
                vault_id INTEGER NOT NULL REFERENCES vaults(id),
                investor TEXT NOT NULL,
                amount_deposited INTEGER NOT NULL CHECK (amount_deposited >= 0),
                first_deposit_at INTEGER NOT NULL,
                last_deposit_at INTEGER NOT NULL,
                last_reward_claim INTEGER,
                last_return_claim INTEGER,
                PRIMARY KEY (vault_id, investor)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS repayment_schedules (
                vault_id INTEGER PRIMARY KEY REFERENCES vaults(id),
                monthly_amount INTEGER NOT NULL CHECK (monthly_amount > 0),
                total_months INTEGER NOT NULL CHECK (total_months > 0),
                paid_months INTEGER NOT NULL DEFAULT 0,
                next_payment_due INTEGER NOT NULL,
                total_owed INTEGER NOT NULL,
                total_paid INTEGER NOT NULL DEFAULT 0,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at INTEGER NOT NULL,
                CHECK (paid_months >= 0 AND paid_months <= total_months),
                CHECK (total_paid <= total_owed)
            )
        ''')

        # One row per period; the unique key backs the at-most-once guarantee
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS repayment_payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                vault_id INTEGER NOT NULL REFERENCES repayment_schedules(vault_id),
                month INTEGER NOT NULL,
                amount INTEGER NOT NULL,
                due_at INTEGER NOT NULL,
                paid_at INTEGER NOT NULL,
                UNIQUE (vault_id, month)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS price_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_price INTEGER NOT NULL,
                last_update INTEGER NOT NULL,
                multiplier INTEGER NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS lottery_rounds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL DEFAULT 'open',
                prize_pool INTEGER NOT NULL DEFAULT 0,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                winner_vault_id INTEGER,
                random_value TEXT,
                started_at INTEGER NOT NULL,
                resolved_at INTEGER
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS lottery_entries (
                round_id INTEGER NOT NULL REFERENCES lottery_rounds(id),
                vault_id INTEGER NOT NULL REFERENCES vaults(id),
                position INTEGER NOT NULL,
                fee INTEGER NOT NULL,
                entered_at INTEGER NOT NULL,
                PRIMARY KEY (round_id, vault_id),
                UNIQUE (round_id, position)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,  -- 'repayment', 'prize', 'entry_fee'
                vault_id INTEGER,
                round_id INTEGER,
                counterparty TEXT,
                amount INTEGER NOT NULL,
                ts INTEGER NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                vault_id INTEGER,
                round_id INTEGER,
                payload TEXT,
                ts INTEGER NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_schedules_active_due ON repayment_schedules(is_active, next_payment_due)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_vault ON events(vault_id, id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_transfers_vault ON transfers(vault_id, id)')


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
