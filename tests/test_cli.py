"""Tests for the CLI commands that run without a live server"""

import asyncio
import logging

import pytest
from click.testing import CliRunner

from chillfi_client.cli import _wait_for_queue, cli
from chillfi_client.client import STORE_FILENAME, ChillfiClient
from chillfi_client.core.exceptions import TransientNetworkError
from chillfi_client.core.store import LocalStore, OfflineQueueEntry
from chillfi_client.transport.messages import ConnectionState
from chillfi_client.upload.models import TaskStatus


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def config_file(tmp_path, cache_dir):
    path = tmp_path / "config.yaml"
    path.write_text(
        f'server:\n  url: "http://127.0.0.1:1"\nauth:\n  token: "t"\ncache:\n  directory: "{cache_dir}"\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture
def quick_offline_config(config_file):
    """Gives up reconnecting after one immediate attempt"""
    with open(config_file, "a", encoding="utf-8") as f:
        f.write("connection:\n  reconnect_delay: 0\n  max_reconnect_attempts: 1\n")
    return config_file


def invoke(*args):
    return CliRunner().invoke(cli, list(args), obj={})


class TestQueueCommand:
    def test_empty_queue(self, config_file):
        result = invoke("--config", str(config_file), "queue")

        assert result.exit_code == 0
        assert "Offline queue is empty." in result.output

    def test_lists_and_abandons(self, config_file, cache_dir):
        """Test queued actions are listed and can be dropped by id"""
        cache_dir.mkdir(parents=True)
        store = LocalStore(cache_dir / STORE_FILENAME)
        entry = OfflineQueueEntry.create("song:recordListen", {"songId": 3})
        store.enqueue(entry)
        store.close()

        listed = invoke("--config", str(config_file), "queue")
        assert entry.id in listed.output
        assert "song:recordListen" in listed.output

        abandoned = invoke("--config", str(config_file), "queue", "--abandon", entry.id)
        assert abandoned.exit_code == 0

        again = invoke("--config", str(config_file), "queue", "--abandon", entry.id)
        assert again.exit_code == 1
        assert "No queued action" in again.output


class TestOtherCommands:
    def test_cache_clear(self, config_file):
        result = invoke("--config", str(config_file), "cache", "clear")

        assert result.exit_code == 0
        assert "Removed 0 cached entries." in result.output

    def test_configuration_error(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("cache: {}\n", encoding="utf-8")

        result = invoke("--config", str(path), "queue")

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_upload_without_audio_files(self, config_file, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("x", encoding="utf-8")

        result = invoke("--config", str(config_file), "upload", str(notes))

        assert result.exit_code == 1
        assert "No audio files found." in result.output

    def test_upload_while_server_unreachable(self, quick_offline_config, tmp_path):
        """Test files left pending when the client goes offline are reported"""
        song = tmp_path / "Night Drive.mp3"
        song.write_bytes(b"x" * 1536)

        result = invoke("--config", str(quick_offline_config), "upload", str(song))

        assert result.exit_code == 1
        assert "Found 1 audio file (1.5 KB)" in result.output
        assert "1 upload(s) did not finish" in result.output
        assert "Night Drive.mp3 (pending)" in result.output

    @pytest.mark.parametrize("command", [["avatar", "7"], ["album-art"]])
    def test_image_commands_reject_other_files(self, config_file, tmp_path, command):
        notes = tmp_path / "notes.txt"
        notes.write_text("x", encoding="utf-8")

        result = invoke("--config", str(config_file), *command, str(notes))

        assert result.exit_code == 1
        assert "Not an image file: notes.txt" in result.output


class TestWaitForQueue:
    """How long the upload command waits on the queue"""

    @pytest.mark.asyncio
    async def test_returns_when_paused_while_connected(self, config, transport, bulk, tmp_path):
        """Test a bulk gateway error with the call channel still up does not hang"""
        transport.responders["song:checkHash"] = lambda data: {"success": True, "exists": False}
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Upload interrupted (502): Bad Gateway")]
        song = tmp_path / "a.mp3"
        song.write_bytes(b"not really audio")

        async with ChillfiClient(config, transport=transport, bulk=bulk) as client:
            tasks = await client.pipeline.submit([song])
            summary = await asyncio.wait_for(_wait_for_queue(client), 2.0)

            assert client.connection.state == ConnectionState.CONNECTED
            assert tasks[0].status == TaskStatus.PAUSED_NETWORK
            assert summary.paused == 1
            assert bulk.uploaded_names() == ["a.mp3"]

    @pytest.mark.asyncio
    async def test_returns_when_all_finished(self, config, transport, bulk, tmp_path):
        transport.responders["song:checkHash"] = lambda data: {"success": True, "exists": False}
        song = tmp_path / "a.mp3"
        song.write_bytes(b"not really audio")

        async with ChillfiClient(config, transport=transport, bulk=bulk) as client:
            await client.pipeline.submit([song])
            summary = await asyncio.wait_for(_wait_for_queue(client), 2.0)

        assert summary.uploaded == 1
