"""
Bulk transfer client for whole-file song uploads.

Files travel over plain HTTP, separately from the call channel:

    POST {server}/api/upload/songs
    Authorization: Bearer <token>
    multipart/form-data:
        files     the audio file
        metadata  JSON list with one metadata object per file

    200 {"success": true,
         "results": [{"success": true, "filename": "...", "songId": 12}],
         "uploaded": 1, "failed": 0}

Failures are raised as one of two types, decided here and nowhere else:

    TransientNetworkError   connection refused/reset, payload cut short,
                            timeout, or a gateway-class status
                            (408, 429, 502, 503, 504)
    TerminalTransferError   any other non-2xx status, a body that is not
                            JSON, or a per-file rejection in 'results'
"""

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import aiohttp

from chillfi_client.core.exceptions import (
    TerminalTransferError,
    TransferError,
    TransientNetworkError,
)
from chillfi_client.core.logger import get_logger


logger = get_logger(__name__)


UPLOAD_PATH = "/api/upload/songs"
DEFAULT_TRANSFER_TIMEOUT = 300.0
DEFAULT_READ_BLOCK_SIZE = 256 * 1024
TRANSIENT_STATUSES = frozenset({408, 429, 502, 503, 504})

ProgressCallback = Callable[[float], None]


class BulkTransferClient:
    """
    Uploads one audio file per request to the bulk endpoint.

    Args:
        base_url: Service base URL (http:// or https://).
        token: Bearer token.
        timeout: Total time budget for one file transfer, in seconds.
        read_block_size: Bytes read from disk per body block. Progress is
                         reported once per block.
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None,
        timeout: float = DEFAULT_TRANSFER_TIMEOUT,
        read_block_size: int = DEFAULT_READ_BLOCK_SIZE,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.upload_url = base_url.rstrip("/") + UPLOAD_PATH
        self.token = token
        self.timeout = timeout
        self.read_block_size = read_block_size
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def upload(
        self,
        path: Path,
        metadata: dict[str, Any],
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """
        Transfer one file from byte zero.

        Args:
            path: Audio file to send.
            metadata: Metadata object sent as the single element of the
                      'metadata' JSON list.
            on_progress: Called with the fraction of the file sent so far.

        Returns:
            The per-file result, e.g. {"success": True, "filename": ..., "songId": 12}.

        Raises:
            TransientNetworkError: The network failed; retrying later may work.
            TerminalTransferError: The service rejected the file.
        """
        try:
            size = path.stat().st_size
        except OSError as e:
            raise TerminalTransferError(
                f"Cannot read file: {e}",
                details={"path": str(path)}
            ) from e

        writer = aiohttp.MultipartWriter("form-data")
        file_part = writer.append(
            self._read_blocks(path, size, on_progress),
            {"Content-Type": "application/octet-stream"},
        )
        file_part.set_content_disposition("form-data", name="files", filename=path.name, quote_fields=False)
        metadata_part = writer.append(json.dumps([metadata]))
        metadata_part.set_content_disposition("form-data", name="metadata", quote_fields=False)

        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with self._get_session().post(
                self.upload_url,
                data=writer,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.text()
                status = response.status
                reason = response.reason or ""
        except TransferError:
            raise
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(
                f"Network error during upload: {e or type(e).__name__}",
                details={"path": str(path)}
            ) from e

        if status in TRANSIENT_STATUSES:
            raise TransientNetworkError(
                f"Upload interrupted ({status}): {reason}",
                details={"path": str(path), "status": status}
            )

        if not 200 <= status < 300:
            raise TerminalTransferError(
                f"Upload failed ({status}): {reason}",
                details={"path": str(path), "status": status, "body": body[:500]}
            )

        try:
            document = json.loads(body)
        except json.JSONDecodeError as e:
            raise TerminalTransferError(
                "Invalid response format",
                details={"path": str(path), "status": status}
            ) from e

        return self._file_result(path, document)

    def _file_result(self, path: Path, document: Any) -> dict[str, Any]:
        if not isinstance(document, dict):
            raise TerminalTransferError("Invalid response format", details={"path": str(path)})

        results = document.get("results")
        result = results[0] if isinstance(results, list) and results else None

        if document.get("success") is False or document.get("error"):
            message = _error_message(result) or _error_message(document) or "Upload rejected"
            raise TerminalTransferError(message, details={"path": str(path)})

        if not isinstance(result, dict):
            raise TerminalTransferError("Invalid response format", details={"path": str(path)})

        if not result.get("success"):
            raise TerminalTransferError(
                _error_message(result) or "Upload rejected",
                details={"path": str(path), "filename": result.get("filename")}
            )

        return result

    async def _read_blocks(
        self, path: Path, size: int, on_progress: ProgressCallback | None
    ) -> AsyncIterator[bytes]:
        sent = 0
        with open(path, "rb") as f:
            while True:
                block = await asyncio.to_thread(f.read, self.read_block_size)
                if not block:
                    break
                sent += len(block)
                if on_progress is not None:
                    on_progress(sent / size if size else 1.0)
                yield block
        if size == 0 and on_progress is not None:
            on_progress(1.0)


def _error_message(document: Any) -> str | None:
    if not isinstance(document, dict):
        return None
    error = document.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    message = document.get("message")
    return str(message) if message else None
