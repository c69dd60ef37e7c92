"""
Progress bar handling for chillfi-client using Rich library.

The CLI shows one bar per upload queue run. The bar follows the pipeline's
overall progress, (index + current file fraction) / total, and counts
uploaded, failed, skipped and paused files.

Usage:
    from chillfi_client.core.progress import UploadProgressBar

    with UploadProgressBar(total=12) as progress:
        progress.set_overall(0.25)
        progress.update(TaskStatus.SUCCEEDED)
"""

from abc import ABC, abstractmethod
from typing import Optional

from rich import get_console
from rich.console import JustifyMethod, OverflowMethod
from rich.highlighter import Highlighter
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    Task,
    TaskID,
)
from rich.style import StyleType
from rich.text import Text
from rich.theme import Theme

from chillfi_client.upload.models import TaskStatus


# =============================================================================
# Common Theme
# =============================================================================

PROGRESS_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(165,66,129)",
    "bar.finished": "rgb(114,156,31)",
    "bar.pulse": "rgb(165,66,129)",
    "progress.percentage": "white",
})


# =============================================================================
# Custom Column
# =============================================================================

class SizedTextColumn(ProgressColumn):
    """
    Text column truncated with an ellipsis past a fixed width.
    """

    def __init__(
        self,
        text_format: str,
        style: StyleType = "none",
        justify: JustifyMethod = "left",
        markup: bool = True,
        highlighter: Optional[Highlighter] = None,
        overflow: Optional[OverflowMethod] = None,
        width: int = 20,
    ) -> None:
        self.text_format = text_format
        self.justify: JustifyMethod = justify
        self.style = style
        self.markup = markup
        self.highlighter = highlighter
        self.overflow: Optional[OverflowMethod] = overflow
        self.width = width
        super().__init__()

    def render(self, task: Task) -> Text:
        """Render the column."""
        _text = self.text_format.format(task=task)
        if self.markup:
            text = Text.from_markup(_text, style=self.style, justify=self.justify)
        else:
            text = Text(_text, style=self.style, justify=self.justify)
        if self.highlighter:
            self.highlighter.highlight(text)

        text.truncate(max_width=self.width, overflow=self.overflow, pad=True)
        return text


# =============================================================================
# Base Progress Bar
# =============================================================================

class BaseProgressBar(ABC):
    """
    Abstract base class for progress bars.

    Provides:
    - Rich Progress instance with the shared theme
    - Context manager support (__enter__/__exit__)
    - Manual start/stop control
    - Log method for printing above the bar

    Subclasses implement _get_status_text() and update().
    """

    def __init__(
        self,
        total: int,
        description: str,
        status_width: int = 35
    ):
        self.total = total
        self.description = description
        self.completed: float = 0

        self.console = get_console()
        self.console.push_theme(PROGRESS_THEME)

        self.progress = Progress(
            SizedTextColumn(
                "[white]{task.description}",
                overflow="ellipsis",
                width=15,
            ),
            SizedTextColumn(
                "{task.fields[status]}",
                width=status_width,
                style="white",
            ),
            BarColumn(bar_width=40, finished_style="green"),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=self.console,
            transient=False,
            refresh_per_second=10,
        )

        self.task_id: Optional[TaskID] = None
        self._started = False

    def __enter__(self) -> "BaseProgressBar":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        """Start the progress bar (can be called manually)."""
        if not self._started:
            self.progress.start()
            self.task_id = self.progress.add_task(
                description=self.description,
                total=self.total,
                status=self._get_status_text(),
            )
            self._started = True

    def stop(self) -> None:
        if self._started:
            self.progress.stop()
            self._started = False

    def log(self, message: str) -> None:
        """Print a message above the progress bar."""
        self.progress.console.print(message, highlight=False)

    def _update_progress(self) -> None:
        if self.task_id is not None:
            self.progress.update(
                self.task_id,
                completed=self.completed,
                status=self._get_status_text(),
            )

    @abstractmethod
    def _get_status_text(self) -> str:
        pass

    @abstractmethod
    def update(self, *args, **kwargs) -> None:
        pass


# =============================================================================
# Upload Progress Bar
# =============================================================================

class UploadProgressBar(BaseProgressBar):
    """
    Progress bar for a bulk upload queue run.

    Displays:
    - Description ("Uploading")
    - Status: ✓ uploaded, ✗ failed, ⊘ skipped duplicates, ⏸ paused
    - Progress bar
    - Percentage

    Example:
        Uploading       ✓ 9  ✗ 1  ⊘ 2           ━━━━━━━━━━━━━━━━━  83%
    """

    def __init__(self, total: int, description: str = "Uploading"):
        super().__init__(total=total, description=description)
        self.uploaded = 0
        self.failed = 0
        self.skipped = 0
        self.paused = 0

    def _get_status_text(self) -> str:
        parts = [
            f"[green]✓ {self.uploaded}[/green]",
            f"[red]✗ {self.failed}[/red]",
        ]
        if self.skipped > 0:
            parts.append(f"[yellow]⊘ {self.skipped}[/yellow]")
        if self.paused > 0:
            parts.append(f"[cyan]⏸ {self.paused}[/cyan]")
        return "  ".join(parts)

    def set_overall(self, overall: float) -> None:
        """
        Move the bar to an overall fraction in [0, 1].

        Args:
            overall: Queue progress as reported by QueueProgress.
        """
        self.completed = max(0.0, min(1.0, overall)) * self.total
        self._update_progress()

    def update(self, status: TaskStatus, previous: TaskStatus | None = None) -> None:
        """
        Count a task that reached a new status.

        A paused task that later succeeds or fails moves out of the
        paused count.
        """
        if previous == TaskStatus.PAUSED_NETWORK and self.paused > 0:
            self.paused -= 1

        if status == TaskStatus.SUCCEEDED:
            self.uploaded += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        elif status == TaskStatus.DUPLICATE_SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.PAUSED_NETWORK:
            self.paused += 1

        self._update_progress()


__all__ = [
    "PROGRESS_THEME",
    "SizedTextColumn",
    "BaseProgressBar",
    "UploadProgressBar",
]
