"""
Typed facade over the service's call events.

Each method issues one call through the correlator. Successful reads are
written back to the local store so the offline router has something to
serve later. Listens that cannot be delivered are queued instead of lost.

Usage:
    api = ServiceApi(correlator, store)

    songs = await api.get_songs(filters={"artist": "Someone"})
    playback = await api.play_song(42)   # cached for 45 minutes
    await api.record_listen(42)
"""

from typing import Any

from chillfi_client.core.exceptions import RpcError, ServerError
from chillfi_client.core.logger import get_logger
from chillfi_client.core.store import LocalStore, OfflineQueueEntry
from chillfi_client.rpc.correlator import RpcCorrelator


logger = get_logger(__name__)


DEFAULT_SNAPSHOT_TTL = 300
DEFAULT_PLAYBACK_URL_TTL = 45 * 60


class ServiceApi:
    """
    Service calls with snapshot caching.

    Args:
        correlator: Issues the calls.
        store: Receives song snapshots, response snapshots and playback URLs.
        snapshot_ttl: Max age (seconds) of cached responses served when a
                      read asks for cached data.
        playback_url_ttl: Lifetime (seconds) of cached playback URLs.
    """

    def __init__(
        self,
        correlator: RpcCorrelator,
        store: LocalStore,
        snapshot_ttl: float = DEFAULT_SNAPSHOT_TTL,
        playback_url_ttl: float = DEFAULT_PLAYBACK_URL_TTL,
    ) -> None:
        self.correlator = correlator
        self.store = store
        self.snapshot_ttl = snapshot_ttl
        self.playback_url_ttl = playback_url_ttl

    async def _cached_read(self, event: str, payload: dict[str, Any], cached: bool) -> Any:
        if cached and self.correlator.connection.is_connected:
            snapshot = self.store.get_cached_response(event, payload, self.snapshot_ttl)
            if snapshot is not None:
                logger.debug(f"Serving '{event}' from cache")
                return snapshot

        response = await self.correlator.call(event, payload)

        if isinstance(response, dict) and not response.get("offline"):
            self.store.cache_response(event, payload, response)
        return response

    # =========================================================================
    # Songs
    # =========================================================================

    async def get_songs(
        self,
        page: int = 1,
        limit: int = 20,
        filters: dict[str, Any] | None = None,
        cached: bool = False,
    ) -> dict[str, Any]:
        """
        List songs (song:list).

        Args:
            filters: Optional 'artist', 'album' and 'search' keys.
            cached: Serve a response younger than snapshot_ttl if one exists.
        """
        payload: dict[str, Any] = {"page": page, "limit": limit}
        if filters:
            payload["filters"] = filters

        response = await self._cached_read("song:list", payload, cached)
        if not response.get("offline"):
            self.store.cache_songs(_items(response))
        return response

    async def get_song(self, song_id: Any, max_age: float | None = None) -> dict[str, Any]:
        """
        Fetch one song (song:get).

        Args:
            max_age: When set, a cached snapshot younger than this many
                     seconds is returned without calling the server.
        """
        if max_age is not None:
            song = self.store.get_song(song_id, max_age=max_age)
            if song is not None:
                return {"success": True, "data": {"song": song}, "cached": True}

        response = await self.correlator.call("song:get", {"songId": song_id})
        song = (response.get("data") or {}).get("song")
        if isinstance(song, dict) and not response.get("offline"):
            self.store.cache_song(song)
        return response

    async def search_songs(self, query: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
        response = await self.correlator.call(
            "song:search", {"query": query, "page": page, "limit": limit}
        )
        self.store.cache_songs(_items(response))
        return response

    async def get_recently_played(self, limit: int = 10, offset: int = 0) -> dict[str, Any]:
        response = await self.correlator.call(
            "song:recentlyPlayed", {"limit": limit, "offset": offset}
        )
        if not response.get("offline"):
            songs = (response.get("data") or {}).get("songs")
            if isinstance(songs, list):
                self.store.cache_songs([s for s in songs if isinstance(s, dict)])
        return response

    async def play_song(self, song_id: Any) -> dict[str, Any]:
        """
        Resolve a playback URL (song:play).

        A cached URL is reused until its fixed lifetime ends. The song's
        metadata is cached as a snapshot.
        """
        playback = self.store.get_playback_url(song_id)
        if playback is not None:
            return playback

        response = await self.correlator.call("song:play", {"songId": song_id})
        if response.get("url"):
            self.store.cache_playback_url(song_id, response, ttl=self.playback_url_ttl)
        metadata = response.get("metadata")
        if isinstance(metadata, dict):
            self.store.cache_song({"id": song_id, **metadata})
        return response

    async def record_listen(self, song_id: Any) -> dict[str, Any]:
        """
        Record a listen (song:recordListen).

        If the call cannot be delivered the listen is queued for replay and
        {"success": True, "queued": True} is returned. A server rejection is
        raised, not queued.
        """
        try:
            return await self.correlator.call("song:recordListen", {"songId": song_id})
        except ServerError:
            raise
        except RpcError as e:
            logger.debug(f"Queueing listen for song {song_id}: {e.message}")
            self.store.enqueue(OfflineQueueEntry.create(
                "song:recordListen", {"songId": song_id}, now=self.store.now()
            ))
            return {"success": True, "queued": True}

    async def check_hash(self, digest: str) -> bool:
        """Ask whether content with this SHA-256 digest already exists."""
        response = await self.correlator.call("song:checkHash", {"hash": digest})
        return bool(response.get("exists"))

    # =========================================================================
    # Albums
    # =========================================================================

    async def get_albums(self, page: int = 1, limit: int = 20, cached: bool = False) -> dict[str, Any]:
        return await self._cached_read("albums:list", {"page": page, "limit": limit}, cached)

    # =========================================================================
    # Playlists
    # =========================================================================

    async def get_playlists(
        self, user_id: Any = None, page: int = 1, limit: int = 20
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"page": page, "limit": limit}
        if user_id is not None:
            payload["userId"] = user_id
        return await self.correlator.call("playlist:list", payload)

    async def create_playlist(
        self, name: str, is_public: bool = False, description: str = ""
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "isPublic": is_public}
        if description:
            payload["description"] = description
        return await self.correlator.call("playlist:create", payload)

    async def update_playlist(self, playlist_id: Any, updates: dict[str, Any]) -> dict[str, Any]:
        return await self.correlator.call(
            "playlist:update", {"playlistId": playlist_id, "updates": updates}
        )

    async def add_to_playlist(self, playlist_id: Any, song_id: Any) -> dict[str, Any]:
        return await self.correlator.call(
            "playlist:addSong", {"playlistId": playlist_id, "songId": song_id}
        )

    async def remove_from_playlist(self, playlist_id: Any, song_id: Any) -> dict[str, Any]:
        return await self.correlator.call(
            "playlist:removeSong", {"playlistId": playlist_id, "songId": song_id}
        )


def _items(response: Any) -> list[dict[str, Any]]:
    if not isinstance(response, dict):
        return []
    data = response.get("data")
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]
