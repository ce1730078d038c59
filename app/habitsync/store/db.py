import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS activities (
          id TEXT PRIMARY KEY,
          name TEXT,
          activity_type TEXT DEFAULT 'numeric',
          color TEXT,
          sort_order INTEGER DEFAULT 0,
          is_active INTEGER DEFAULT 1,
          created_at TEXT,
          remote_ref TEXT UNIQUE,
          remote_tag TEXT,
          dirty INTEGER DEFAULT 0,
          last_modified_at TEXT
        )
        """
    )

    # activity_id is a non-owning reference; no foreign key so a session may
    # arrive from the remote store before its parent.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
          id TEXT PRIMARY KEY,
          activity_id TEXT,
          session_date TEXT,
          duration REAL,
          numeric_value REAL,
          is_completed INTEGER DEFAULT 1,
          created_at TEXT,
          remote_ref TEXT UNIQUE,
          remote_tag TEXT,
          dirty INTEGER DEFAULT 0,
          last_modified_at TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS change_tokens (
          zone TEXT PRIMARY KEY,
          token TEXT NOT NULL,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_type TEXT,
          status TEXT,
          started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          finished_at DATETIME,
          summary_json TEXT
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_dirty ON activities(dirty)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_dirty ON sessions(dirty)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_activity ON sessions(activity_id)")

    conn.commit()
    conn.close()
