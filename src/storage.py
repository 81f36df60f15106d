# storage.py
# SQLite-backed players, score history and leaderboard.

from datetime import datetime
from typing import List, NamedTuple, Optional
import base64
import hashlib
import logging
import sqlite3
import threading

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS players (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pubkey_fingerprint TEXT UNIQUE NOT NULL,
    username TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL,
    score INTEGER NOT NULL,
    max_tile INTEGER NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (player_id) REFERENCES players(id)
);

CREATE INDEX IF NOT EXISTS idx_scores_score ON scores(score DESC);
CREATE INDEX IF NOT EXISTS idx_players_fingerprint ON players(pubkey_fingerprint);
"""


class StorageError(Exception):
    """Raised when the score database cannot be read or written."""


class PlayerNotFoundError(StorageError):
    """Raised when no player matches a fingerprint."""


class PlayerExistsError(StorageError):
    """Raised when a fingerprint is already registered."""


class Player(NamedTuple):
    id: int
    fingerprint: str
    username: str
    created_at: Optional[datetime]


class ScoreRecord(NamedTuple):
    id: int
    player_id: int
    score: int
    max_tile: int
    created_at: Optional[datetime]


class LeaderboardEntry(NamedTuple):
    rank: int
    username: str
    score: int
    max_tile: int
    created_at: Optional[datetime]


def fingerprint_for_key(key: str) -> str:
    """
    Derives a stable player identity from a client credential.
    Returns:
        str: "SHA256:" followed by the unpadded base64 of the key's SHA-256 digest.
    """
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class ScoreStore:
    """
    Player and score records in a single SQLite database.

    One connection is shared by every caller; statements run one at a time.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False)
            self.conn.execute("PRAGMA foreign_keys = ON")
            if path != ":memory:":
                self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"failed to open database {path}: {e}") from e
        logger.info("Score database ready at %s", path)

    def close(self) -> None:
        self.conn.close()

    def _query(self, sql: str, params: tuple = ()) -> List[tuple]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"database query failed: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Runs one statement in its own transaction. Integrity errors are left to the caller."""
        try:
            with self._lock, self.conn:
                return self.conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageError(f"database write failed: {e}") from e

    # --- Players ---

    def get_player_by_fingerprint(self, fingerprint: str) -> Player:
        rows = self._query(
            "SELECT id, pubkey_fingerprint, username, created_at FROM players WHERE pubkey_fingerprint = ?",
            (fingerprint,),
        )
        if not rows:
            raise PlayerNotFoundError(f"player not found: {fingerprint}")
        row = rows[0]
        return Player(row[0], row[1], row[2], _parse_timestamp(row[3]))

    def create_player(self, fingerprint: str, username: str) -> Player:
        try:
            self._write(
                "INSERT INTO players (pubkey_fingerprint, username) VALUES (?, ?)",
                (fingerprint, username),
            )
        except sqlite3.IntegrityError as e:
            raise PlayerExistsError(f"player already registered: {fingerprint}") from e
        logger.info("Registered player %s (%s)", username, fingerprint)
        return self.get_player_by_fingerprint(fingerprint)

    def update_username(self, player_id: int, username: str) -> None:
        cursor = self._write("UPDATE players SET username = ? WHERE id = ?", (username, player_id))
        if cursor.rowcount == 0:
            raise PlayerNotFoundError(f"player not found: id {player_id}")

    def get_player_best_score(self, player_id: int) -> int:
        rows = self._query("SELECT MAX(score) FROM scores WHERE player_id = ?", (player_id,))
        return rows[0][0] or 0

    # --- Scores ---

    def save_score(self, player_id: int, score: int, max_tile: int) -> None:
        try:
            self._write(
                "INSERT INTO scores (player_id, score, max_tile) VALUES (?, ?, ?)",
                (player_id, score, max_tile),
            )
        except sqlite3.IntegrityError as e:
            raise PlayerNotFoundError(f"player not found: id {player_id}") from e

    def get_player_scores(self, player_id: int, limit: int = 10) -> List[ScoreRecord]:
        rows = self._query(
            """
            SELECT id, player_id, score, max_tile, created_at
            FROM scores
            WHERE player_id = ?
            ORDER BY score DESC
            LIMIT ?
            """,
            (player_id, limit),
        )
        return [ScoreRecord(r[0], r[1], r[2], r[3], _parse_timestamp(r[4])) for r in rows]

    # --- Leaderboard ---

    def get_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        """Top scores across all players, highest first, ranked from 1."""
        rows = self._query(
            """
            SELECT p.username, s.score, s.max_tile, s.created_at
            FROM scores s
            JOIN players p ON s.player_id = p.id
            ORDER BY s.score DESC, s.id ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [LeaderboardEntry(rank, r[0], r[1], r[2], _parse_timestamp(r[3]))
                for rank, r in enumerate(rows, start=1)]

    def get_player_rank(self, player_id: int) -> int:
        """1 + the number of recorded scores strictly above this player's best."""
        rows = self._query(
            """
            SELECT COUNT(*) + 1
            FROM scores
            WHERE score > (SELECT COALESCE(MAX(score), 0) FROM scores WHERE player_id = ?)
            """,
            (player_id,),
        )
        return rows[0][0]
