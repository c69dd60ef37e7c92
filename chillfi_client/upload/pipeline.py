"""
Bulk file upload pipeline.

Files are processed strictly one at a time, in submission order:

    pending -> hashing -> checking-duplicate -> duplicate-skipped
                                             -> transferring -> succeeded
                                                             -> paused-network
                                                             -> failed

    paused-network -> transferring (when the connection comes back)
    paused-network -> failed       (cancelled, or resume attempts used up)

Network failures during a transfer pause the file instead of failing it.
Paused files go to a resume list. The next time the connection manager
reports Connected the list is taken as one batch and drained; each file is
retransferred from byte zero and reports progress at its original queue
position. A file that pauses again during the drain waits for the next
Connected. Rejections by the server are final and reported once.

Once a file is transferring, paused or uploaded its digest is claimed; a
later file with the same digest is skipped without asking the server.

New work only starts while the connection is up. Files submitted while
offline stay pending until it returns.

Progress is published on the upload channel as TaskStatusChanged,
FileProgress and QueueProgress messages. QueueProgress.overall is
(index + current file fraction) / total.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from chillfi_client.core.exceptions import (
    RpcError,
    TerminalTransferError,
    TransientNetworkError,
)
from chillfi_client.core.logger import format_upload_summary, get_logger, log_upload_failure
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.transport.bulk import BulkTransferClient
from chillfi_client.transport.messages import ConnectionState, StateChange
from chillfi_client.upload.hashing import ContentHasher, DedupChecker
from chillfi_client.upload.metadata import extract_metadata
from chillfi_client.upload.models import (
    FileProgress,
    QueueProgress,
    SongMetadata,
    TaskStatus,
    TaskStatusChanged,
    UploadEvent,
    UploadSummary,
    UploadTask,
)


logger = get_logger(__name__)


DEFAULT_MAX_RESUME_ATTEMPTS = 3

UploadListener = Callable[[UploadEvent], None]
MetadataReader = Callable[[Path], Awaitable[SongMetadata]]


class UploadPipeline:
    """
    Sequential upload queue with dedup, pause and resume.

    Args:
        hasher: Computes content digests.
        dedup: Checks digests against the server.
        bulk: Transfers whole files.
        connection: Source of Connected transitions that trigger resumption.
        max_resume_attempts: Resumptions allowed per file before it fails.
        metadata_reader: Coroutine building SongMetadata for a path.

    Example:
        pipeline = UploadPipeline(hasher, dedup, bulk, connection)
        pipeline.add_listener(print)
        await pipeline.submit([Path("a.flac"), Path("b.mp3")])
        summary = await pipeline.join()
    """

    def __init__(
        self,
        hasher: ContentHasher,
        dedup: DedupChecker,
        bulk: BulkTransferClient,
        connection: ConnectionManager,
        max_resume_attempts: int = DEFAULT_MAX_RESUME_ATTEMPTS,
        metadata_reader: MetadataReader = extract_metadata,
    ) -> None:
        self.hasher = hasher
        self.dedup = dedup
        self.bulk = bulk
        self.connection = connection
        self.max_resume_attempts = max_resume_attempts
        self._read_metadata = metadata_reader

        self.tasks: list[UploadTask] = []
        self.resume_list: list[UploadTask] = []
        self.summary: UploadSummary | None = None

        self._listeners: list[UploadListener] = []
        self._runner: asyncio.Future | None = None
        self._current: asyncio.Future | None = None
        self._resume_batch: list[UploadTask] = []
        self._claimed: dict[str, UploadTask] = {}
        self._cancelled = False

        connection.add_listener(self._on_state_change)

    # =========================================================================
    # Upload channel
    # =========================================================================

    def add_listener(self, listener: UploadListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: UploadEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Upload listener failed")

    def _set_status(self, task: UploadTask, status: TaskStatus) -> None:
        previous = task.transition(status)
        self._emit(TaskStatusChanged(task=task, previous=previous, current=status))

    def _progress(self, task: UploadTask, fraction: float) -> None:
        task.fraction = fraction
        total = len(self.tasks)
        self._emit(FileProgress(task=task, fraction=fraction))
        self._emit(QueueProgress(
            overall=(task.index + fraction) / total if total else 1.0,
            index=task.index,
            total=total,
        ))

    def _fail(self, task: UploadTask, message: str) -> None:
        if task.digest is not None and self._claimed.get(task.digest) is task:
            del self._claimed[task.digest]
        task.error = message
        self._set_status(task, TaskStatus.FAILED)
        log_upload_failure(logger, task.path, message)

    # =========================================================================
    # Queue control
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def is_stalled(self) -> bool:
        """
        True when only paused files are left and nothing will resume them.

        The queue is idle while connected, so the paused files wait for a
        reconnect or an explicit resume().
        """
        return (
            not self.is_running
            and bool(self.resume_list)
            and not self._resume_batch
            and self.connection.is_connected
            and not any(t.status == TaskStatus.PENDING for t in self.tasks)
        )

    async def submit(self, paths: Iterable[Path]) -> list[UploadTask]:
        """
        Queue files for upload and start processing.

        Metadata is read now, at submission time, off the event loop.

        Returns:
            The new tasks, in queue order.
        """
        new_tasks = []
        for path in paths:
            metadata = await self._read_metadata(path)
            task = UploadTask(path=path, metadata=metadata, index=len(self.tasks))
            self.tasks.append(task)
            new_tasks.append(task)

        if new_tasks:
            logger.info(f"Queued {len(new_tasks)} file{'s' if len(new_tasks) != 1 else ''} for upload")
        self.start()
        return new_tasks

    def start(self) -> None:
        """Start (or restart after cancel()) processing pending tasks."""
        self._cancelled = False
        self.summary = None
        self._ensure_running()

    def resume(self) -> None:
        """Retransfer paused files now instead of waiting for a reconnect."""
        if self.resume_list:
            self._take_resume_batch()
            self._ensure_running()

    def cancel(self) -> None:
        """
        Stop the queue.

        Pending tasks stay pending. The in-flight task and every paused
        task fail and are marked abandoned.
        """
        self._cancelled = True

        if self._current is not None and not self._current.done():
            self._current.cancel()

        paused = self._resume_batch + self.resume_list
        self._resume_batch, self.resume_list = [], []
        for task in paused:
            task.abandoned = True
            self._fail(task, "Upload cancelled")

        if paused or self._current is not None:
            logger.info("Upload queue cancelled")

    async def join(self) -> UploadSummary:
        """Wait until the queue goes idle and return its summary."""
        while self.is_running:
            await asyncio.wait({self._runner})
        return UploadSummary.from_tasks(self.tasks)

    def _ensure_running(self) -> None:
        if not self.is_running:
            self._runner = asyncio.ensure_future(self._run())

    def _take_resume_batch(self) -> None:
        self._resume_batch.extend(self.resume_list)
        self.resume_list = []

    def _on_state_change(self, change: StateChange) -> None:
        if change.current != ConnectionState.CONNECTED or change.previous == ConnectionState.CONNECTED:
            return
        if self._cancelled:
            return
        if self.resume_list:
            logger.info(f"Connection restored, resuming {len(self.resume_list)} paused upload(s)")
            self._take_resume_batch()
        if self._resume_batch or any(t.status == TaskStatus.PENDING for t in self.tasks):
            self._ensure_running()

    # =========================================================================
    # Processing
    # =========================================================================

    def _next_task(self) -> UploadTask | None:
        if self._cancelled or not self.connection.is_connected:
            return None

        if self._resume_batch:
            return self._resume_batch.pop(0)

        return next((t for t in self.tasks if t.status == TaskStatus.PENDING), None)

    async def _run(self) -> None:
        while True:
            task = self._next_task()
            if task is None:
                break
            await self._run_one(task)
        self._finish_run()

    async def _run_one(self, task: UploadTask) -> None:
        if task.status == TaskStatus.PAUSED_NETWORK:
            if task.resume_attempts >= self.max_resume_attempts:
                self._fail(task, "Resume attempts exhausted")
                return
            task.resume_attempts += 1
            logger.info(
                f"Resuming {task.path.name} "
                f"(attempt {task.resume_attempts}/{self.max_resume_attempts})"
            )
            work = self._transfer(task)
        else:
            work = self._process(task)

        self._current = asyncio.ensure_future(work)
        try:
            await asyncio.wait({self._current})
        except asyncio.CancelledError:
            self._current.cancel()
            raise

        current, self._current = self._current, None

        if current.cancelled():
            task.abandoned = True
            if not task.status.is_terminal:
                self._fail(task, "Upload cancelled")
            return

        error = current.exception()
        if error is not None:
            logger.error(f"Unexpected error uploading {task.path.name}: {error}", exc_info=error)
            if not task.status.is_terminal and task.status != TaskStatus.PAUSED_NETWORK:
                self._fail(task, f"Unexpected error: {error}")

    async def _process(self, task: UploadTask) -> None:
        self._set_status(task, TaskStatus.HASHING)
        try:
            task.digest = await self.hasher.hash_file(task.path)
        except OSError as e:
            self._fail(task, f"Cannot read file: {e}")
            return

        self._set_status(task, TaskStatus.CHECKING_DUPLICATE)
        owner = self._claimed.get(task.digest)
        if owner is not None and owner is not task:
            self._set_status(task, TaskStatus.DUPLICATE_SKIPPED)
            self._progress(task, 1.0)
            logger.info(f"Skipped {task.path.name}: same content as {owner.path.name}")
            return

        try:
            exists = await self.dedup.exists(task.digest)
        except RpcError as e:
            self._fail(task, f"Duplicate check failed: {e.message}")
            return

        if exists:
            self._set_status(task, TaskStatus.DUPLICATE_SKIPPED)
            self._progress(task, 1.0)
            logger.info(f"Skipped {task.path.name}: already on the server")
            return

        await self._transfer(task)

    async def _transfer(self, task: UploadTask) -> None:
        if task.digest is not None:
            self._claimed[task.digest] = task
        self._set_status(task, TaskStatus.TRANSFERRING)
        self._progress(task, 0.0)

        try:
            result = await self.bulk.upload(
                task.path,
                task.metadata.to_payload(),
                on_progress=lambda fraction: self._progress(task, fraction),
            )
        except TransientNetworkError as e:
            if task.resume_attempts >= self.max_resume_attempts:
                self._fail(task, f"{e.message} (resume attempts exhausted)")
                return
            task.error = e.message
            self._set_status(task, TaskStatus.PAUSED_NETWORK)
            self.resume_list.append(task)
            logger.warning(f"Paused {task.path.name}: {e.message}")
            return
        except TerminalTransferError as e:
            self._fail(task, e.message)
            return

        task.result = result
        task.error = None
        self._progress(task, 1.0)
        self._set_status(task, TaskStatus.SUCCEEDED)
        logger.info(f"Uploaded {task.path.name}")

    def _finish_run(self) -> None:
        pending = any(t.status == TaskStatus.PENDING for t in self.tasks)
        if pending and not self._cancelled:
            logger.info("Upload queue waiting for connection")
            return
        paused = len(self._resume_batch) + len(self.resume_list)
        if paused:
            logger.info(f"{paused} upload(s) paused until the connection returns")
            return

        summary = UploadSummary.from_tasks(self.tasks)
        if summary.total == 0:
            return
        self.summary = summary
        logger.info(format_upload_summary(
            summary.uploaded, summary.failed, summary.skipped, summary.paused
        ))
