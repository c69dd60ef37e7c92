"""
Offline fallback routing and offline queue replay.

While the connection manager is not Connected, the correlator offers every
call to OfflineRouter.try_fallback() before failing it:

    Reads served from the local store (tagged offline=True):
        song:list             cached songs, filtered like the server does
        song:get              the cached song, or no fallback
        song:recentlyPlayed   the first 'limit' cached songs
        albums:list           albums grouped from cached songs
        playlist:list         offline playlists

    Writes queued for later replay (never faked):
        song:recordListen, playlist:create, playlist:addSong,
        playlist:removeSong, playlist:update

Any other event gets NO_FALLBACK and the call fails with NotConnectedError.

OfflineSync replays the queue in FIFO order once Connected. An entry is
deleted only after its replay succeeded; the first failure stops the run
and leaves that entry and every later one in place.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable

from chillfi_client.core.exceptions import RpcError
from chillfi_client.core.logger import get_logger
from chillfi_client.core.store import LocalStore, OfflineQueueEntry
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.rpc.correlator import NO_FALLBACK, CallOptions, RpcCorrelator
from chillfi_client.transport.messages import ConnectionState, StateChange


logger = get_logger(__name__)


QUEUED_WRITE_EVENTS = frozenset({
    "song:recordListen",
    "playlist:create",
    "playlist:addSong",
    "playlist:removeSong",
    "playlist:update",
})

LOCAL_PLAYLIST_PREFIX = "offline_"
DEFAULT_RECENT_LIMIT = 10


def _listing(items: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "items": items,
            "pagination": {
                "total": len(items),
                "page": 1,
                "limit": len(items),
                "totalPages": 1,
            },
        },
        "offline": True,
    }


class OfflineRouter:
    """
    Serves reads from the store and queues writes while disconnected.

    Args:
        store: The durable local store.
    """

    def __init__(self, store: LocalStore) -> None:
        self.store = store
        self._reads: dict[str, Callable[[dict[str, Any]], dict[str, Any] | None]] = {
            "song:list": self._song_list,
            "song:get": self._song_get,
            "song:recentlyPlayed": self._recently_played,
            "albums:list": self._albums_list,
            "playlist:list": self._playlist_list,
        }
        self._writes: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "playlist:create": self._create_playlist,
            "playlist:addSong": self._add_song,
            "playlist:removeSong": self._remove_song,
        }

    def try_fallback(self, event: str, payload: dict[str, Any]) -> Any:
        """
        Return a synthesized response for event, or NO_FALLBACK.
        """
        read = self._reads.get(event)
        if read is not None:
            response = read(payload)
            return response if response is not None else NO_FALLBACK

        if event in QUEUED_WRITE_EVENTS:
            write = self._writes.get(event)
            if write is not None:
                return write(payload)
            self.queue_action(event, payload)
            return {"success": True, "queued": True, "offline": True}

        return NO_FALLBACK

    def queue_action(self, action_type: str, payload: dict[str, Any]) -> OfflineQueueEntry:
        """Append a write to the offline queue."""
        entry = OfflineQueueEntry.create(action_type, payload, now=self.store.now())
        self.store.enqueue(entry)
        logger.info(f"Queued '{action_type}' for when the connection is back")
        return entry

    # =========================================================================
    # Reads
    # =========================================================================

    def _song_list(self, payload: dict[str, Any]) -> dict[str, Any]:
        songs = self.store.get_cached_songs()
        filters = payload.get("filters") or {}

        if filters.get("artist"):
            songs = [s for s in songs if s.get("artist") == filters["artist"]]
        if filters.get("album"):
            songs = [s for s in songs if s.get("album") == filters["album"]]
        if filters.get("search"):
            term = str(filters["search"]).lower()
            songs = [
                s for s in songs
                if any(term in str(s.get(key) or "").lower() for key in ("title", "artist", "album"))
            ]

        return _listing(songs)

    def _song_get(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        song = self.store.get_song(payload.get("songId"))
        if song is None:
            return None
        return {"success": True, "data": {"song": song}, "offline": True}

    def _recently_played(self, payload: dict[str, Any]) -> dict[str, Any]:
        limit = payload.get("limit") or DEFAULT_RECENT_LIMIT
        songs = self.store.get_cached_songs()[:limit]
        return {
            "success": True,
            "data": {"songs": songs, "total": len(songs)},
            "offline": True,
        }

    def _albums_list(self, payload: dict[str, Any]) -> dict[str, Any]:
        albums: dict[Any, dict[str, Any]] = {}
        for song in self.store.get_cached_songs():
            album_id = song.get("album_id")
            if not song.get("album") or album_id is None:
                continue
            if album_id not in albums:
                albums[album_id] = {
                    "id": album_id,
                    "title": song.get("album"),
                    "artist": song.get("artist"),
                    "cover_art_url": song.get("cover_art_url"),
                    "song_count": 0,
                }
            albums[album_id]["song_count"] += 1
        return _listing(list(albums.values()))

    def _playlist_list(self, payload: dict[str, Any]) -> dict[str, Any]:
        return _listing(self.store.get_playlists())

    # =========================================================================
    # Offline Playlists
    # =========================================================================

    def create_playlist(
        self, name: str, description: str = "", is_public: bool = False
    ) -> dict[str, Any]:
        """
        Create a playlist locally and queue its creation on the server.

        The playlist gets a local id ("offline_<ms>-<random hex>") that is
        rewritten to the server id when the queued create is replayed.
        """
        now = self.store.now()
        local_id = f"{LOCAL_PLAYLIST_PREFIX}{int(now * 1000)}-{random.getrandbits(32):08x}"
        playlist = {
            "id": local_id,
            "name": name,
            "description": description,
            "isPublic": is_public,
            "songs": [],
            "createdAt": int(now * 1000),
            "offline": True,
        }
        self.store.save_playlist(playlist)
        self.queue_action("playlist:create", {
            "name": name,
            "description": description,
            "isPublic": is_public,
            "localId": local_id,
        })
        return playlist

    def add_song_to_playlist(self, playlist_id: Any, song_id: Any) -> bool:
        """
        Add a song to a playlist offline.

        Returns:
            False if the song was already in the offline copy (nothing queued).
        """
        playlist = self.store.get_playlist(playlist_id)
        if playlist is not None:
            songs = playlist.setdefault("songs", [])
            if song_id in songs:
                return False
            songs.append(song_id)
            self.store.save_playlist(playlist)

        self.queue_action("playlist:addSong", {"playlistId": playlist_id, "songId": song_id})
        return True

    def remove_song_from_playlist(self, playlist_id: Any, song_id: Any) -> None:
        playlist = self.store.get_playlist(playlist_id)
        if playlist is not None:
            playlist["songs"] = [s for s in playlist.get("songs", []) if s != song_id]
            self.store.save_playlist(playlist)

        self.queue_action("playlist:removeSong", {"playlistId": playlist_id, "songId": song_id})

    def _create_playlist(self, payload: dict[str, Any]) -> dict[str, Any]:
        playlist = self.create_playlist(
            name=payload.get("name", ""),
            description=payload.get("description", ""),
            is_public=bool(payload.get("isPublic", False)),
        )
        return {"success": True, "queued": True, "offline": True, "data": {"playlist": playlist}}

    def _add_song(self, payload: dict[str, Any]) -> dict[str, Any]:
        queued = self.add_song_to_playlist(payload.get("playlistId"), payload.get("songId"))
        return {"success": True, "queued": queued, "offline": True}

    def _remove_song(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.remove_song_from_playlist(payload.get("playlistId"), payload.get("songId"))
        return {"success": True, "queued": True, "offline": True}


@dataclass(frozen=True)
class SyncResult:
    """
    Outcome of one offline queue replay.

    Attributes:
        replayed: Entries replayed and removed.
        remaining: Entries still queued afterwards.
        failed_entry: The entry that stopped the run, if any.
        error: Why it failed.
    """
    replayed: int
    remaining: int
    failed_entry: OfflineQueueEntry | None = None
    error: Exception | None = None

    @property
    def completed(self) -> bool:
        return self.failed_entry is None and self.remaining == 0


class OfflineSync:
    """
    Replays the offline queue when the connection comes back.

    Registers itself with the connection manager: every transition into
    Connected starts a sync run. Runs never overlap.

    Args:
        store: The durable local store holding the queue.
        correlator: Used to replay each entry as a call.
        connection: Source of state changes.
    """

    def __init__(
        self,
        store: LocalStore,
        correlator: RpcCorrelator,
        connection: ConnectionManager,
    ) -> None:
        self.store = store
        self.correlator = correlator
        self.connection = connection
        self._lock = asyncio.Lock()
        self._task: asyncio.Future | None = None

        connection.add_listener(self._on_state_change)

    @property
    def task(self) -> asyncio.Future | None:
        """The sync run started by the last reconnection, if any."""
        return self._task

    def _on_state_change(self, change: StateChange) -> None:
        if change.current == ConnectionState.CONNECTED and change.previous != ConnectionState.CONNECTED:
            if self.store.queue_size() > 0:
                self._task = asyncio.ensure_future(self.sync())

    async def sync(self) -> SyncResult:
        """
        Replay queued actions in FIFO order.

        Stops at the first failed replay; that entry and all later ones
        stay queued. Returns a SyncResult describing the run.
        """
        async with self._lock:
            replayed = 0
            pending = self.store.queue_size()
            if pending:
                logger.info(f"Syncing {pending} offline action{'s' if pending != 1 else ''}")

            while self.connection.is_connected:
                entries = self.store.queued_actions()
                if not entries:
                    break
                entry = entries[0]
                payload = {k: v for k, v in entry.payload.items() if k != "localId"}

                try:
                    response = await self.correlator.call(
                        entry.action_type,
                        payload,
                        CallOptions(allow_fallback=False),
                    )
                except RpcError as e:
                    logger.warning(f"Offline sync stopped at '{entry.action_type}': {e.message}")
                    return SyncResult(
                        replayed=replayed,
                        remaining=self.store.queue_size(),
                        failed_entry=entry,
                        error=e,
                    )

                if entry.action_type == "playlist:create" and entry.payload.get("localId"):
                    server_id = _created_playlist_id(response)
                    if server_id is not None:
                        self.store.replace_playlist_id(entry.payload["localId"], server_id)

                self.store.remove_action(entry.id)
                replayed += 1

            remaining = self.store.queue_size()
            if replayed:
                logger.info(f"Offline sync replayed {replayed} action{'s' if replayed != 1 else ''}")
            return SyncResult(replayed=replayed, remaining=remaining)

    def abandon(self, entry_id: str) -> bool:
        """Drop a queued action without replaying it."""
        removed = self.store.remove_action(entry_id)
        if removed:
            logger.info(f"Abandoned offline action {entry_id}")
        return removed


def _created_playlist_id(response: Any) -> Any:
    if not isinstance(response, dict):
        return None
    data = response.get("data")
    if isinstance(data, dict):
        if data.get("playlistId") is not None:
            return data["playlistId"]
        playlist = data.get("playlist")
        if isinstance(playlist, dict) and playlist.get("id") is not None:
            return playlist["id"]
        if data.get("id") is not None:
            return data["id"]
    return response.get("playlistId")
