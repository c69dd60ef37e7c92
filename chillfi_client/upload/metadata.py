"""
Tag extraction for audio files queued for upload.

Reads title, artist, album, genre, year, track number and duration with
mutagen, plus embedded cover art (ID3 APIC, FLAC picture blocks, MP4
'covr'). When a file carries no cover, a conventional image in the same
folder (folder.jpg, cover.jpg, ...) is used instead.

Anything missing falls back to the filename defaults in SongMetadata.
Extraction never raises: an unreadable file simply yields the defaults.
"""

import asyncio
import base64
import re
from pathlib import Path
from typing import Any

import mutagen
from mutagen.flac import FLAC
from mutagen.id3 import ID3NoHeaderError
from mutagen.mp4 import MP4

from chillfi_client.core.logger import get_logger
from chillfi_client.upload.models import SongMetadata
from chillfi_client.utils import find_folder_album_art


logger = get_logger(__name__)


_YEAR_PATTERN = re.compile(r"(\d{4})")


def _first(tags: Any, key: str) -> str | None:
    try:
        values = tags.get(key)
    except (KeyError, ValueError):
        return None
    if not values:
        return None
    value = str(values[0]).strip()
    return value or None


def _parse_year(value: str | None) -> int | None:
    if not value:
        return None
    match = _YEAR_PATTERN.search(value)
    return int(match.group(1)) if match else None


def _parse_track_number(value: str | None) -> int | None:
    # "3/12" -> 3
    if not value:
        return None
    head = value.split("/")[0].strip()
    return int(head) if head.isdigit() else None


def _embedded_artwork(path: Path) -> bytes | None:
    try:
        audio = mutagen.File(path)
    except (mutagen.MutagenError, ID3NoHeaderError, OSError):
        return None
    if audio is None:
        return None

    if isinstance(audio, FLAC):
        return audio.pictures[0].data if audio.pictures else None

    if isinstance(audio, MP4):
        covers = audio.tags.get("covr") if audio.tags else None
        return bytes(covers[0]) if covers else None

    tags = getattr(audio, "tags", None)
    if tags is not None and hasattr(tags, "getall"):
        pictures = tags.getall("APIC")
        if pictures:
            return pictures[0].data
    return None


def read_song_metadata(path: Path) -> SongMetadata:
    """
    Build SongMetadata for an audio file (blocking).

    Args:
        path: Audio file.

    Returns:
        Metadata with every available tag applied over the defaults.
    """
    metadata = SongMetadata.from_filename(path)

    try:
        audio = mutagen.File(path, easy=True)
    except (mutagen.MutagenError, OSError) as e:
        logger.debug(f"Could not read tags from {path.name}: {e}")
        audio = None

    if audio is not None:
        tags = audio.tags or {}
        metadata.title = _first(tags, "title") or metadata.title
        metadata.artist = _first(tags, "artist") or metadata.artist
        metadata.album = _first(tags, "album") or metadata.album
        metadata.genre = _first(tags, "genre")
        metadata.year = _parse_year(_first(tags, "date"))
        metadata.track_number = _parse_track_number(_first(tags, "tracknumber"))
        if audio.info is not None and getattr(audio.info, "length", None):
            metadata.duration = round(float(audio.info.length), 2)

    artwork = _embedded_artwork(path)
    if artwork is None:
        folder_art = find_folder_album_art(path.parent)
        if folder_art is not None:
            try:
                artwork = folder_art.read_bytes()
            except OSError as e:
                logger.debug(f"Could not read {folder_art}: {e}")

    if artwork:
        metadata.artwork = base64.b64encode(artwork).decode("ascii")

    return metadata


async def extract_metadata(path: Path) -> SongMetadata:
    """Read tags in a worker thread."""
    return await asyncio.to_thread(read_song_metadata, path)
