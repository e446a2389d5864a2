# database.py
import sqlite3
import os
from typing import Optional

DB_PATH = os.getenv("LEDGER_DB_PATH", "ledger.db")


def get_conn(path: Optional[str] = None):
    """
    Returns a fresh SQLite connection with safe settings.
    Each FastAPI request or async task should call this instead of sharing globals.
    """
    conn = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")  # write-ahead logging for concurrency
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db(path: Optional[str] = None):
    """Initialize the ledger node database and create tables if they don’t exist."""
    conn = get_conn(path)
    cur = conn.cursor()

    # Append-only record log; seq is the authoritative insertion order
    cur.execute("""
    CREATE TABLE IF NOT EXISTS records (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        author TEXT NOT NULL,
        conversation_id TEXT,
        data TEXT NOT NULL,
        signature TEXT,
        timestamp INTEGER NOT NULL
    );
    """)

    # Indexes for performance
    cur.execute("CREATE INDEX IF NOT EXISTS idx_kind ON records(kind);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_author ON records(author);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_conversation ON records(conversation_id);")

    conn.commit()
    conn.close()
