"""
SQLite store for accounts, claims, votes and the economy record.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import ensure_db_directory, get_db_path


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    ensure_db_directory()
    conn = sqlite3.connect(get_db_path(), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                energy INTEGER NOT NULL CHECK (energy >= 0),
                reputation REAL NOT NULL DEFAULT 1.0,
                last_action_at REAL,      -- rate-limit clock
                last_ubi_at REAL,
                last_active_at REAL,
                pings_today INTEGER NOT NULL DEFAULT 0,
                quota_reset_date TEXT,    -- YYYY-MM-DD the counter belongs to
                staked_energy INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS claims (
                id TEXT PRIMARY KEY,
                author_id TEXT,           -- NULL after erasure
                lat REAL NOT NULL,
                lon REAL NOT NULL,
                geohash TEXT NOT NULL,
                content TEXT NOT NULL,
                claim_type TEXT NOT NULL,
                radius INTEGER NOT NULL,
                spatial_rent INTEGER NOT NULL DEFAULT 0,
                deposit INTEGER NOT NULL DEFAULT 0,
                staked_energy INTEGER NOT NULL DEFAULT 0,
                verifier_reward_pool INTEGER NOT NULL DEFAULT 0 CHECK (verifier_reward_pool >= 0),
                upvote_weight REAL NOT NULL DEFAULT 0,
                downvote_weight REAL NOT NULL DEFAULT 0,
                confidence REAL NOT NULL DEFAULT 0.5,
                verifier_entropy REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                valid_until REAL NOT NULL,  -- hard TTL
                revision INTEGER NOT NULL DEFAULT 1,
                modifications TEXT NOT NULL DEFAULT '[]',
                snapshot_updated_at REAL
            )
        ''')

        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS claims_location_immutable
            BEFORE UPDATE OF lat, lon ON claims
            BEGIN
                SELECT RAISE(ABORT, 'claim location is immutable');
            END
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS claim_cells (
                claim_id TEXT NOT NULL REFERENCES claims(id) ON DELETE CASCADE,
                cell TEXT NOT NULL,
                PRIMARY KEY (claim_id, cell)
            )
        ''')

        # Votes outlive their claim until the retention sweep, so no foreign key
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS votes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                claim_id TEXT NOT NULL,
                voter_id TEXT NOT NULL,
                action TEXT NOT NULL,
                voter_lat REAL NOT NULL,
                voter_lon REAL NOT NULL,
                distance_m REAL NOT NULL,
                grid_distance INTEGER NOT NULL,
                weight REAL NOT NULL,
                claim_author_id TEXT,
                device_id_hash TEXT,
                ip_subnet TEXT,
                bluetooth_peers INTEGER,
                reported_distance_m REAL,
                created_at REAL NOT NULL,
                UNIQUE (claim_id, voter_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS economy_config (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL,
                updated_by TEXT
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_claims_geohash ON claims(geohash)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_claims_author_status ON claims(author_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_claims_valid_until ON claims(valid_until)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_claim_cells_cell ON claim_cells(cell)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_votes_claim ON votes(claim_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_votes_voter_author ON votes(voter_id, claim_author_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_votes_created_at ON votes(created_at)')

        conn.commit()


def health_check():
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]

            required_tables = ['accounts', 'claims', 'claim_cells', 'votes', 'economy_config']
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
