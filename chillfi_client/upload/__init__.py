"""
Upload layer for chillfi-client.

    - hashing: ContentHasher and DedupChecker
    - chunked: ChunkedUploader for images over the call channel
    - metadata: tag extraction for audio files
    - pipeline: UploadPipeline, the sequential bulk upload queue
"""

from chillfi_client.upload.chunked import ChunkedUploader, ChunkUploadSession
from chillfi_client.upload.hashing import ContentHasher, DedupChecker, select_strategy
from chillfi_client.upload.metadata import extract_metadata, read_song_metadata
from chillfi_client.upload.models import (
    FileProgress,
    QueueProgress,
    SongMetadata,
    TaskStatus,
    TaskStatusChanged,
    UploadSummary,
    UploadTask,
)
from chillfi_client.upload.pipeline import UploadPipeline

__all__ = [
    "ChunkedUploader",
    "ChunkUploadSession",
    "ContentHasher",
    "DedupChecker",
    "select_strategy",
    "extract_metadata",
    "read_song_metadata",
    "SongMetadata",
    "TaskStatus",
    "UploadTask",
    "UploadSummary",
    "TaskStatusChanged",
    "FileProgress",
    "QueueProgress",
    "UploadPipeline",
]
