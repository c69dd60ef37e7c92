"""
Chunked blob uploads over the call channel.

Images (avatars, album art) are small enough to travel as base64 chunks
on the call channel instead of the bulk channel:

    song:uploadImageChunk {
        sessionId, chunkIndex, totalChunks,
        data,        base64 of this chunk
        filename, mimeType
    }

Chunks are sent strictly in order and each waits for its response. Only the
final chunk's response carries 'imageUrl'. Any failure abandons the whole
session: no later chunk is sent, and a retry starts over at chunk zero with
a new session id.

Chunk sizes follow the web client: 64 KiB for avatars, 512 KiB for album
art.
"""

import asyncio
import base64
import mimetypes
import secrets
import string
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from chillfi_client.core.exceptions import ChunkUploadError, RpcError
from chillfi_client.core.logger import get_logger
from chillfi_client.rpc.correlator import CallOptions, RpcCorrelator


logger = get_logger(__name__)


CHUNK_EVENT = "song:uploadImageChunk"
AVATAR_CHUNK_SIZE = 64 * 1024
ALBUM_ART_CHUNK_SIZE = 512 * 1024
AVATAR_FOLDER = "profiles"

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class ChunkUploadSession:
    """
    One blob's chunked transfer.

    Attributes:
        session_id: Identifies the session to the server.
        total_chunks: Number of chunks the blob was split into.
        next_chunk_index: Index of the next chunk to send.
        filename: Name the server stores the image under.
        mime_type: Image MIME type.
        state: ACTIVE until the final chunk succeeds or a chunk fails.
        image_url: Resource locator from the final response.
    """
    session_id: str
    total_chunks: int
    filename: str
    mime_type: str
    next_chunk_index: int = 0
    state: SessionState = SessionState.ACTIVE
    image_url: str | None = None


def split_chunks(blob: bytes, chunk_size: int) -> list[bytes]:
    """Split blob into chunk_size pieces; the last one may be shorter."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [blob[offset:offset + chunk_size] for offset in range(0, len(blob), chunk_size)]


def new_session_id(prefix: str | None = None) -> str:
    """Build "<prefix>_<ms>" or "<ms>_<random>" session ids."""
    millis = int(time.time() * 1000)
    if prefix:
        return f"{prefix}_{millis}"
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"{millis}_{suffix}"


def guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or "application/octet-stream"


class ChunkedUploader:
    """
    Sends blobs as sequential chunk calls.

    Sessions are kept in a map keyed by session id while they are active.

    Args:
        correlator: Issues the chunk calls.
        avatar_chunk_size: Chunk size for avatar images.
        album_art_chunk_size: Chunk size for album art.
    """

    def __init__(
        self,
        correlator: RpcCorrelator,
        avatar_chunk_size: int = AVATAR_CHUNK_SIZE,
        album_art_chunk_size: int = ALBUM_ART_CHUNK_SIZE,
    ) -> None:
        self.correlator = correlator
        self.avatar_chunk_size = avatar_chunk_size
        self.album_art_chunk_size = album_art_chunk_size
        self.sessions: dict[str, ChunkUploadSession] = {}

    async def upload_chunked(
        self,
        blob: bytes,
        filename: str,
        mime_type: str,
        chunk_size: int,
        session_id: str | None = None,
    ) -> str:
        """
        Upload blob in chunks and return the resulting image URL.

        Raises:
            ChunkUploadError: A chunk failed, or the final response had no
                              imageUrl. The session is abandoned.
        """
        if not blob:
            raise ChunkUploadError("Cannot upload an empty image", details={"filename": filename})

        chunks = split_chunks(blob, chunk_size)
        session = ChunkUploadSession(
            session_id=session_id or new_session_id(),
            total_chunks=len(chunks),
            filename=filename,
            mime_type=mime_type,
        )
        self.sessions[session.session_id] = session
        logger.debug(
            f"Chunk session {session.session_id}: {len(blob)} bytes in {len(chunks)} chunks"
        )

        try:
            for index, chunk in enumerate(chunks):
                response = await self._send_chunk(session, index, chunk)
                session.next_chunk_index = index + 1

            image_url = response.get("imageUrl") if isinstance(response, dict) else None
            if not image_url:
                raise ChunkUploadError(
                    "Upload finished without an image URL",
                    details={"session_id": session.session_id}
                )

            session.image_url = image_url
            session.state = SessionState.COMPLETED
            logger.info(f"Uploaded image {filename}")
            return image_url
        except ChunkUploadError:
            session.state = SessionState.ABANDONED
            raise
        finally:
            self.sessions.pop(session.session_id, None)

    async def _send_chunk(self, session: ChunkUploadSession, index: int, chunk: bytes) -> Any:
        payload = {
            "sessionId": session.session_id,
            "uploadId": session.session_id,
            "chunkIndex": index,
            "totalChunks": session.total_chunks,
            "data": base64.b64encode(chunk).decode("ascii"),
            "filename": session.filename,
            "mimeType": session.mime_type,
        }
        try:
            return await self.correlator.call(
                CHUNK_EVENT,
                payload,
                CallOptions(request_id=f"{session.session_id}:{index}", allow_fallback=False),
            )
        except RpcError as e:
            logger.warning(
                f"Chunk {index + 1}/{session.total_chunks} of {session.session_id} failed: {e.message}"
            )
            raise ChunkUploadError(
                f"Chunk upload failed: {e.message}",
                details={"session_id": session.session_id, "chunk_index": index}
            ) from e

    async def upload_avatar(self, user_id: Any, path: Path) -> str:
        """
        Upload a profile image.

        The session id is "avatar_<user>_<ms>" and the image is stored as
        "profiles/<session>.<ext>".
        """
        blob = await asyncio.to_thread(path.read_bytes)
        session_id = new_session_id(f"avatar_{user_id}")
        extension = path.suffix.lstrip(".") or "jpg"
        return await self.upload_chunked(
            blob,
            filename=f"{AVATAR_FOLDER}/{session_id}.{extension}",
            mime_type=guess_mime_type(path),
            chunk_size=self.avatar_chunk_size,
            session_id=session_id,
        )

    async def upload_album_art(self, path: Path) -> str:
        blob = await asyncio.to_thread(path.read_bytes)
        return await self.upload_chunked(
            blob,
            filename=path.name,
            mime_type=guess_mime_type(path),
            chunk_size=self.album_art_chunk_size,
        )
