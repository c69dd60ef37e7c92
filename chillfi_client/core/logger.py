"""
Logging configuration for chillfi-client.

This module sets up the logging system with multiple outputs:
    - Console: Real-time messages with tqdm-compatible formatting
    - log_full_<ts>.log: Complete log of all events (DEBUG and above)
    - log_errors_<ts>.log: Only ERROR and CRITICAL level messages
    - upload_failures_<ts>.log: Files that could not be uploaded, with reason

The logging system follows the principle: everything to screen is also saved
to file, then filtered into specialized files.

Log File Locations:
    All log files are created in a 'logs' subdirectory of the directory
    passed to setup_logging() (the cache directory for the CLI).

Usage:
    from chillfi_client.core.logger import setup_logging, get_logger

    setup_logging(cache_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Connected to server")
    log_upload_failure(logger, path, "Unsupported file type")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


LOG_FULL_PREFIX = "log_full"
LOG_ERRORS_PREFIX = "log_errors"
UPLOAD_FAILURES_PREFIX = "upload_failures"

# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Formatter that colors the level name of console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        return f"{color}{record.levelname}{Colors.RESET}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to console without breaking progress bars.

    Uses tqdm.write(), which prints above any active bar instead of
    tearing it in half.

    Attributes:
        stream: The output stream (defaults to sys.stderr).
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class UploadFailedHandler(logging.Handler):
    """
    Handler that captures upload failures for the upload report file.

    Writes one block per failed file in a human-readable format:

        /music/album/01 - Intro.flac
        Upload failed (413): Payload Too Large

        /music/album/02 - Song.mp3
        Resume attempts exhausted

    The handler looks for specific extra fields in log records:
        - 'upload_failed_path': Local path of the file
        - 'upload_failed_reason': Why the upload failed

    Only records containing these fields are written to the report.

    Attributes:
        report_path: Path to the upload_failures log file.
        report_file: Open file handle, set by open().
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """
        Open the report file for writing.

        Called by setup_logging() after handler is created.
        File is opened in write mode (overwrites existing content).
        """
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, "upload_failed_path"):
            return

        if self.report_file is None:
            return

        try:
            path = getattr(record, "upload_failed_path", "Unknown")
            reason = getattr(record, "upload_failed_reason", "")

            self.report_file.write(f"{path}\n")
            self.report_file.write(f"{reason}\n\n")
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """
        Close the report file handle.

        Safe to call multiple times.
        """
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """Filter that only allows ERROR and CRITICAL level records."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(output_dir: Path, verbose: bool = False) -> Path:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded but before any other operations.

    Args:
        output_dir: Directory under which a 'logs' subdirectory is created.
        verbose: When True the console shows DEBUG records too.

    Returns:
        The logs directory that received this run's files.

    Behavior:
        1. Create output_dir/logs if it doesn't exist
        2. Generate timestamp for this run's log files
        3. Replace any existing root handlers with:
           - console (TqdmLoggingHandler, colored, INFO or DEBUG)
           - full log file (DEBUG)
           - error-only log file (ErrorOnlyFilter)
           - upload failure report (UploadFailedHandler)
    """
    logs_dir = output_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    full_handler = logging.FileHandler(
        logs_dir / f"{LOG_FULL_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(
        logs_dir / f"{LOG_ERRORS_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    upload_handler = UploadFailedHandler(logs_dir / f"{UPLOAD_FAILURES_PREFIX}_{timestamp}.log")
    upload_handler.open()
    root_logger.addHandler(upload_handler)

    # aiohttp is chatty at DEBUG about every frame
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return logs_dir


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.

    Returns:
        logging.Logger: A logger instance configured by setup_logging().
    """
    return logging.getLogger(name)


def format_upload_summary(uploaded: int, failed: int, skipped: int, paused: int = 0) -> str:
    """
    Build the end-of-queue message.

    Example:
        "3 files uploaded successfully, 1 skipped (duplicates)"
    """
    message = f"{uploaded} file{'s' if uploaded != 1 else ''} uploaded successfully"
    if failed > 0:
        message += f", {failed} failed"
    if skipped > 0:
        message += f", {skipped} skipped (duplicates)"
    if paused > 0:
        message += f", {paused} waiting for connection"
    return message


def log_upload_failure(logger: logging.Logger, path: Path | str, error_message: str) -> None:
    """
    Log a file whose upload failed.

    Logs at ERROR level and attaches the extra fields UploadFailedHandler
    uses to write the upload failure report.

    Example:
        log_upload_failure(logger, Path("/music/a.flac"), "Upload failed (413): Payload Too Large")
    """
    logger.error(
        f"Upload failed: {Path(path).name} - {error_message}",
        extra={
            "upload_failed_path": str(path),
            "upload_failed_reason": error_message,
        }
    )


def shutdown_logging() -> None:
    """
    Flush, close and remove every root handler.

    Typically called in a finally block at application exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            pass
        root_logger.removeHandler(handler)
