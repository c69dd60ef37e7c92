"""Tests for the upload progress bar"""

from chillfi_client.core.progress import UploadProgressBar
from chillfi_client.upload.models import TaskStatus


class TestUploadProgressBar:
    """Counters and overall progress, without rendering"""

    def test_counts(self):
        bar = UploadProgressBar(total=4)
        bar.update(TaskStatus.SUCCEEDED)
        bar.update(TaskStatus.DUPLICATE_SKIPPED)
        bar.update(TaskStatus.FAILED)
        bar.update(TaskStatus.HASHING)

        assert (bar.uploaded, bar.skipped, bar.failed, bar.paused) == (1, 1, 1, 0)
        assert "⊘ 1" in bar._get_status_text()

    def test_paused_task_leaves_paused_count(self):
        bar = UploadProgressBar(total=1)
        bar.update(TaskStatus.PAUSED_NETWORK)
        assert bar.paused == 1

        bar.update(TaskStatus.TRANSFERRING, previous=TaskStatus.PAUSED_NETWORK)
        bar.update(TaskStatus.SUCCEEDED, previous=TaskStatus.TRANSFERRING)

        assert bar.paused == 0
        assert bar.uploaded == 1

    def test_overall_is_clamped(self):
        bar = UploadProgressBar(total=4)

        bar.set_overall(0.5)
        assert bar.completed == 2.0

        bar.set_overall(1.7)
        assert bar.completed == 4.0

    def test_start_and_stop(self):
        with UploadProgressBar(total=2) as bar:
            bar.set_overall(1.0)
        assert not bar._started

    def test_log_prints_above_the_bar(self):
        """Test messages go to the bar's console with markup applied"""
        bar = UploadProgressBar(total=1)

        with bar.console.capture() as capture:
            bar.log("[red]Failed[/red] a.mp3: Upload failed (413)")

        output = capture.get()
        assert "a.mp3: Upload failed (413)" in output
        assert "[red]" not in output
