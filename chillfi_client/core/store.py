"""
Durable local store for chillfi-client.

A single SQLite file that survives restarts and holds everything the client
needs while the server is unreachable.

Schema:
    cache_entries:      Keyed JSON values with write time and optional expiry
                        (API response snapshots, playback URLs)
    songs:              Song snapshots cached from successful reads
    offline_queue:      Pending write actions, replayed FIFO on reconnect
    offline_playlists:  Playlists created or edited while offline

Every mutation is a whole-entry replace or append inside its own
transaction, so components sharing the store never see half-written rows.
Malformed rows are treated as absent and evicted; they never raise.

Usage:
    store = LocalStore(cache_dir / "chillfi.db")

    store.cache_song({"id": 7, "title": "Intro", "artist": "Someone"})
    store.put("playback:7", {"url": "https://..."}, ttl=45 * 60)

    store.enqueue(OfflineQueueEntry.create("song:recordListen", {"songId": 7}))
    for entry in store.queued_actions():
        ...
"""

import json
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generator

from chillfi_client.core.exceptions import StoreError
from chillfi_client.core.logger import get_logger


logger = get_logger(__name__)


STORE_VERSION = 1
PLAYBACK_URL_PREFIX = "playback:"
RESPONSE_PREFIX = "response:"


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    stored_at REAL NOT NULL,
    expires_at REAL           -- NULL: no fixed expiry, max age chosen per read
);

CREATE TABLE IF NOT EXISTS songs (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,       -- JSON song snapshot
    cached_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS offline_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    action_type TEXT NOT NULL,
    payload TEXT NOT NULL,    -- JSON
    timestamp REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS offline_playlists (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,       -- JSON playlist with songs list
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_songs_cached_at ON songs(cached_at);
"""


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value with its timing information.

    Attributes:
        key: Cache key, e.g. "playback:42" or "response:song:list:{...}".
        value: The decoded JSON value.
        stored_at: Unix time of the write.
        expires_at: Fixed expiry (Unix time) or None when the reader
                    chooses the max age.
    """
    key: str
    value: Any
    stored_at: float
    expires_at: float | None = None

    def is_expired(self, now: float, max_age: float | None = None) -> bool:
        if self.expires_at is not None and now >= self.expires_at:
            return True
        if max_age is not None and now - self.stored_at > max_age:
            return True
        return False


@dataclass(frozen=True)
class OfflineQueueEntry:
    """
    A write action waiting to be replayed against the server.

    Attributes:
        id: Unique id built from the creation time plus a random suffix.
        action_type: Call event to replay, e.g. "playlist:addSong".
        payload: Call payload.
        timestamp: Unix time the action was queued.
    """
    id: str
    action_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    @classmethod
    def create(cls, action_type: str, payload: dict[str, Any], now: float | None = None) -> "OfflineQueueEntry":
        now = time.time() if now is None else now
        entry_id = f"{int(now * 1000)}-{random.getrandbits(32):08x}"
        return cls(id=entry_id, action_type=action_type, payload=dict(payload), timestamp=now)


class LocalStore:
    """
    Thread-safe SQLite store.

    Uses a single persistent connection guarded by a lock, the same way
    for calls from the event loop and from worker threads.

    Args:
        db_path: Path of the SQLite file. The parent directory must exist.
        clock: Time source returning Unix seconds. Tests inject a fake.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time) -> None:
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

        if not db_path.parent.exists():
            raise StoreError(
                f"Parent directory does not exist: {db_path.parent}",
                details={"path": str(db_path.parent)}
            )

        try:
            self._init_database()
        except sqlite3.Error as e:
            raise StoreError(
                f"Failed to initialize local store: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
        yield self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SQL)

            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (STORE_VERSION,))
            elif row[0] != STORE_VERSION:
                raise StoreError(
                    f"Store version mismatch: expected {STORE_VERSION}, got {row[0]}",
                    details={"expected": STORE_VERSION, "actual": row[0]}
                )
            conn.commit()

    def now(self) -> float:
        return self._clock()

    # =========================================================================
    # Cache Entries
    # =========================================================================

    def put(self, key: str, value: Any, ttl: float | None = None) -> CacheEntry:
        """
        Store value under key, replacing any previous entry.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            ttl: Fixed lifetime in seconds, or None to let readers decide.
        """
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=now,
            expires_at=now + ttl if ttl is not None else None,
        )
        encoded = json.dumps(value)

        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO cache_entries (key, value, stored_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        stored_at = excluded.stored_at,
                        expires_at = excluded.expires_at
                """, (key, encoded, entry.stored_at, entry.expires_at))
                conn.commit()
        return entry

    def get_entry(self, key: str, max_age: float | None = None) -> CacheEntry | None:
        """
        Read an entry, honoring its fixed expiry and the reader's max age.

        Expired or malformed entries are evicted and reported as a miss.
        """
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT key, value, stored_at, expires_at FROM cache_entries WHERE key = ?",
                    (key,)
                ).fetchone()
                if row is None:
                    return None

                try:
                    entry = CacheEntry(
                        key=row["key"],
                        value=json.loads(row["value"]),
                        stored_at=float(row["stored_at"]),
                        expires_at=float(row["expires_at"]) if row["expires_at"] is not None else None,
                    )
                except (json.JSONDecodeError, TypeError, ValueError):
                    logger.warning(f"Evicting malformed cache entry: {key}")
                    self._evict(conn, key)
                    return None

                if entry.is_expired(self._clock(), max_age):
                    self._evict(conn, key)
                    return None

                return entry

    def get(self, key: str, max_age: float | None = None) -> Any | None:
        entry = self.get_entry(key, max_age)
        return entry.value if entry is not None else None

    def delete(self, key: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                self._evict(conn, key)

    def _evict(self, conn: sqlite3.Connection, key: str) -> None:
        conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        conn.commit()

    def cache_playback_url(self, song_id: Any, playback: dict[str, Any], ttl: float) -> None:
        """Cache a song:play response for ttl seconds (fixed at write)."""
        self.put(f"{PLAYBACK_URL_PREFIX}{song_id}", playback, ttl=ttl)

    def get_playback_url(self, song_id: Any) -> dict[str, Any] | None:
        value = self.get(f"{PLAYBACK_URL_PREFIX}{song_id}")
        return value if isinstance(value, dict) else None

    def cache_response(self, event: str, payload: dict[str, Any] | None, response: Any) -> None:
        """Cache a successful call response keyed by event and payload."""
        self.put(response_cache_key(event, payload), response)

    def get_cached_response(
        self, event: str, payload: dict[str, Any] | None, max_age: float
    ) -> Any | None:
        return self.get(response_cache_key(event, payload), max_age=max_age)

    def clear_cache(self) -> int:
        """
        Drop cached responses, playback URLs and song snapshots.

        The offline queue and offline playlists are kept: they hold user
        data that has not reached the server yet.

        Returns:
            Number of rows removed.
        """
        with self._lock:
            with self._get_connection() as conn:
                removed = conn.execute("DELETE FROM cache_entries").rowcount
                removed += conn.execute("DELETE FROM songs").rowcount
                conn.commit()
        return removed

    # =========================================================================
    # Song Snapshots
    # =========================================================================

    def cache_song(self, song: dict[str, Any]) -> None:
        """Store or replace a song snapshot. Songs without an id are ignored."""
        if not isinstance(song, dict) or song.get("id") is None:
            return

        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO songs (id, data, cached_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        cached_at = excluded.cached_at
                """, (str(song["id"]), json.dumps(song), self._clock()))
                conn.commit()

    def cache_songs(self, songs: list[dict[str, Any]]) -> None:
        for song in songs:
            self.cache_song(song)

    def get_song(self, song_id: Any, max_age: float | None = None) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT id, data, cached_at FROM songs WHERE id = ?", (str(song_id),)
                ).fetchone()
                if row is None:
                    return None

                song = self._decode_song(conn, row)
                if song is None:
                    return None
                if max_age is not None and self._clock() - row["cached_at"] > max_age:
                    return None
                return song

    def get_cached_songs(self) -> list[dict[str, Any]]:
        """Return every cached song, most recently cached first."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT id, data, cached_at FROM songs ORDER BY cached_at DESC, rowid DESC"
                ).fetchall()
                songs = []
                for row in rows:
                    song = self._decode_song(conn, row)
                    if song is not None:
                        songs.append(song)
                return songs

    def _decode_song(self, conn: sqlite3.Connection, row: sqlite3.Row) -> dict[str, Any] | None:
        try:
            song = json.loads(row["data"])
        except (json.JSONDecodeError, TypeError):
            song = None
        if not isinstance(song, dict):
            logger.warning(f"Evicting malformed song snapshot: {row['id']}")
            conn.execute("DELETE FROM songs WHERE id = ?", (row["id"],))
            conn.commit()
            return None
        return song

    # =========================================================================
    # Offline Queue
    # =========================================================================

    def enqueue(self, entry: OfflineQueueEntry) -> bool:
        """
        Append an action to the offline queue.

        Returns:
            True if appended, False if an entry with the same id is
            already queued (the call is then a no-op).
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO offline_queue (id, action_type, payload, timestamp)
                    VALUES (?, ?, ?, ?)
                """, (entry.id, entry.action_type, json.dumps(entry.payload), entry.timestamp))
                conn.commit()
                return cursor.rowcount > 0

    def queued_actions(self) -> list[OfflineQueueEntry]:
        """Return queued actions in insertion (FIFO) order."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT id, action_type, payload, timestamp FROM offline_queue ORDER BY seq"
                ).fetchall()

                entries = []
                for row in rows:
                    try:
                        payload = json.loads(row["payload"])
                    except (json.JSONDecodeError, TypeError):
                        payload = None
                    if not isinstance(payload, dict):
                        logger.warning(f"Dropping malformed offline action: {row['id']}")
                        conn.execute("DELETE FROM offline_queue WHERE id = ?", (row["id"],))
                        conn.commit()
                        continue
                    entries.append(OfflineQueueEntry(
                        id=row["id"],
                        action_type=row["action_type"],
                        payload=payload,
                        timestamp=row["timestamp"],
                    ))
                return entries

    def remove_action(self, entry_id: str) -> bool:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM offline_queue WHERE id = ?", (entry_id,))
                conn.commit()
                return cursor.rowcount > 0

    def queue_size(self) -> int:
        with self._lock:
            with self._get_connection() as conn:
                return conn.execute("SELECT COUNT(*) FROM offline_queue").fetchone()[0]

    # =========================================================================
    # Offline Playlists
    # =========================================================================

    def save_playlist(self, playlist: dict[str, Any]) -> None:
        """Store or replace an offline playlist (keyed by its 'id')."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO offline_playlists (id, data, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (str(playlist["id"]), json.dumps(playlist), self._clock()))
                conn.commit()

    def get_playlist(self, playlist_id: Any) -> dict[str, Any] | None:
        for playlist in self.get_playlists():
            if str(playlist.get("id")) == str(playlist_id):
                return playlist
        return None

    def get_playlists(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT id, data FROM offline_playlists ORDER BY updated_at, rowid"
                ).fetchall()
                playlists = []
                for row in rows:
                    try:
                        playlist = json.loads(row["data"])
                    except (json.JSONDecodeError, TypeError):
                        playlist = None
                    if not isinstance(playlist, dict):
                        conn.execute("DELETE FROM offline_playlists WHERE id = ?", (row["id"],))
                        conn.commit()
                        continue
                    playlists.append(playlist)
                return playlists

    def replace_playlist_id(self, local_id: str, server_id: Any) -> bool:
        """
        Rewrite a locally created playlist's id to the id the server assigned.

        Queued actions still referring to the local id are rewritten too.
        A malformed stored playlist is evicted and False is returned.
        """
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT data FROM offline_playlists WHERE id = ?", (str(local_id),)
                ).fetchone()
                if row is None:
                    return False

                try:
                    playlist = json.loads(row["data"])
                except (json.JSONDecodeError, TypeError):
                    playlist = None
                if not isinstance(playlist, dict):
                    logger.warning(f"Evicting malformed offline playlist: {local_id}")
                    conn.execute("DELETE FROM offline_playlists WHERE id = ?", (str(local_id),))
                    conn.commit()
                    return False

                playlist["id"] = server_id
                playlist["offline"] = False
                playlist.pop("localId", None)

                conn.execute("DELETE FROM offline_playlists WHERE id = ?", (str(local_id),))
                conn.execute("""
                    INSERT OR REPLACE INTO offline_playlists (id, data, updated_at)
                    VALUES (?, ?, ?)
                """, (str(server_id), json.dumps(playlist), self._clock()))

                queued = conn.execute(
                    "SELECT id, payload FROM offline_queue ORDER BY seq"
                ).fetchall()
                for queued_row in queued:
                    try:
                        payload = json.loads(queued_row["payload"])
                    except (json.JSONDecodeError, TypeError):
                        continue
                    if isinstance(payload, dict) and str(payload.get("playlistId")) == str(local_id):
                        payload["playlistId"] = server_id
                        conn.execute(
                            "UPDATE offline_queue SET payload = ? WHERE id = ?",
                            (json.dumps(payload), queued_row["id"])
                        )
                conn.commit()
                return True

    def delete_playlist(self, playlist_id: Any) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM offline_playlists WHERE id = ?", (str(playlist_id),))
                conn.commit()


def response_cache_key(event: str, payload: dict[str, Any] | None) -> str:
    """Build a stable cache key from an event name and its payload."""
    return f"{RESPONSE_PREFIX}{event}:{json.dumps(payload or {}, sort_keys=True)}"
