"""
Utility functions for chillfi-client.

This module provides small helpers shared across the client:
    - File type checks for audio and image files
    - Folder scanning for upload candidates
    - Conventional folder album art lookup
    - Path and size formatting helpers

Usage:
    from chillfi_client.utils import (
        scan_audio_files,
        find_folder_album_art,
        ensure_directory
    )
"""

from pathlib import Path
from typing import Iterable


AUDIO_EXTENSIONS = frozenset({".mp3", ".wav", ".flac", ".m4a", ".aac", ".ogg", ".wma"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"})

# Checked in this order; the first existing file wins
FOLDER_ART_NAMES = ("folder.jpg", "albumart.jpg", "cover.jpg", "front.jpg", "album.jpg")


def is_audio_file(path: Path) -> bool:
    return path.suffix.lower() in AUDIO_EXTENSIONS


def is_image_file(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def scan_audio_files(paths: Iterable[Path]) -> list[Path]:
    """
    Expand files and folders into a sorted list of audio files.

    Folders are scanned recursively. Explicit files are kept only if
    they have an audio extension. Duplicates are dropped, first
    occurrence wins.

    Example:
        scan_audio_files([Path("album/"), Path("single.mp3")])
        # [Path("album/01 - Intro.flac"), Path("album/02 - Song.flac"), Path("single.mp3")]
    """
    found: list[Path] = []
    seen: set[Path] = set()

    for path in paths:
        if path.is_dir():
            candidates = sorted(p for p in path.rglob("*") if p.is_file() and is_audio_file(p))
        elif path.is_file() and is_audio_file(path):
            candidates = [path]
        else:
            candidates = []

        for candidate in candidates:
            resolved = candidate.resolve()
            if resolved not in seen:
                seen.add(resolved)
                found.append(candidate)

    return found


def find_folder_album_art(folder: Path) -> Path | None:
    """
    Find conventional album art in a folder.

    Names are matched case-insensitively, in FOLDER_ART_NAMES order.
    """
    if not folder.is_dir():
        return None

    by_name = {p.name.lower(): p for p in folder.iterdir() if p.is_file()}
    for name in FOLDER_ART_NAMES:
        if name in by_name:
            return by_name[name]
    return None


def ensure_directory(path: Path) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        OSError: If the directory cannot be created.
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_bytes(size: float) -> str:
    """
    Human-readable byte count.

    Examples:
        format_bytes(512)        # "512 B"
        format_bytes(1536)       # "1.5 KB"
        format_bytes(5242880)    # "5.0 MB"
    """
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


__all__ = [
    "AUDIO_EXTENSIONS",
    "IMAGE_EXTENSIONS",
    "FOLDER_ART_NAMES",
    "is_audio_file",
    "is_image_file",
    "scan_audio_files",
    "find_folder_album_art",
    "ensure_directory",
    "format_bytes",
]
