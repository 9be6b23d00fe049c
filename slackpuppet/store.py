import logging
import sqlite3
from typing import Optional

logger = logging.getLogger(__name__)

CURRENT_SCHEMA = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS slack_schema (
    version INTEGER UNIQUE NOT NULL
);
CREATE TABLE IF NOT EXISTS slack_tokenstore (
    puppet_id INTEGER NOT NULL,
    token TEXT NOT NULL,
    team_id TEXT NOT NULL,
    user_id TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS thread_store (
    event_id TEXT PRIMARY KEY,
    thread_first_event_id TEXT,
    thread_last_event_id TEXT
);
"""


class SlackStore:
    """Token table and thread first/last table, in one sqlite file."""

    def __init__(self, path: str):
        self.path = path
        self.con: Optional[sqlite3.Connection] = None

    def init(self):
        self.con = sqlite3.connect(self.path, timeout=10.0)
        self.con.row_factory = sqlite3.Row
        with self.con:
            self.con.executescript(SCHEMA)
            row = self.con.execute("SELECT version FROM slack_schema LIMIT 1").fetchone()
            if row is None:
                self.con.execute("INSERT INTO slack_schema (version) VALUES (?)", (CURRENT_SCHEMA,))
        logger.info(f"Opened store {self.path}")

    def close(self):
        if self.con:
            self.con.close()
            self.con = None

    # -------- tokens --------
    def get_token(self, puppet_id: int) -> Optional[sqlite3.Row]:
        return self.con.execute(
            "SELECT token, team_id, user_id FROM slack_tokenstore WHERE puppet_id = ? LIMIT 1",
            (puppet_id,)).fetchone()

    def set_token(self, puppet_id: int, token: str, team_id: str, user_id: str):
        with self.con:
            self.con.execute("DELETE FROM slack_tokenstore WHERE puppet_id = ?", (puppet_id,))
            self.con.execute(
                "INSERT INTO slack_tokenstore (puppet_id, token, team_id, user_id) VALUES (?, ?, ?, ?)",
                (puppet_id, token, team_id, user_id))

    def delete_token(self, puppet_id: int):
        with self.con:
            self.con.execute("DELETE FROM slack_tokenstore WHERE puppet_id = ?", (puppet_id,))

    # -------- threads --------
    def set_first_thread_event(self, event_id: str, first_event_id: str):
        with self.con:
            self.con.execute(
                """INSERT INTO thread_store (event_id, thread_first_event_id) VALUES (?, ?)
                   ON CONFLICT(event_id) DO UPDATE SET thread_first_event_id = excluded.thread_first_event_id""",
                (event_id, first_event_id))

    def set_last_thread_event(self, event_id: str, last_event_id: str):
        with self.con:
            self.con.execute(
                """INSERT INTO thread_store (event_id, thread_last_event_id) VALUES (?, ?)
                   ON CONFLICT(event_id) DO UPDATE SET thread_last_event_id = excluded.thread_last_event_id""",
                (event_id, last_event_id))

    def _follow(self, column: str, event_id: str) -> Optional[str]:
        last = None
        seen = {event_id}
        current = event_id
        while True:
            row = self.con.execute(
                f"SELECT {column} FROM thread_store WHERE event_id = ?", (current,)).fetchone()
            current = row[column] if row else None
            if not current or current in seen:
                return last
            seen.add(current)
            last = current

    def get_thread_parent(self, event_id: str) -> Optional[str]:
        row = self.con.execute(
            "SELECT thread_first_event_id FROM thread_store WHERE event_id = ?", (event_id,)).fetchone()
        return row["thread_first_event_id"] if row else None

    def get_first_thread_event(self, event_id: str) -> Optional[str]:
        return self._follow("thread_first_event_id", event_id)

    def get_last_thread_event(self, event_id: str) -> Optional[str]:
        return self._follow("thread_last_event_id", event_id)

    def remove(self, event_id: str):
        with self.con:
            self.con.execute(
                "DELETE FROM thread_store WHERE event_id = ? OR thread_first_event_id = ?",
                (event_id, event_id))
