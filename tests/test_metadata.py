"""Test tag extraction"""

import base64

import pytest

from chillfi_client.upload.metadata import extract_metadata, read_song_metadata


class TestMetadata:
    """Defaults and folder art for files without readable tags"""

    def test_untagged_file_uses_defaults(self, tmp_path):
        path = tmp_path / "Night Drive.mp3"
        path.write_bytes(b"not really audio")

        metadata = read_song_metadata(path)

        assert metadata.title == "Night Drive"
        assert metadata.artist == "Unknown Artist"
        assert metadata.album == "Unknown Album"
        assert metadata.artwork is None

    def test_folder_art_fallback(self, tmp_path):
        """Test a cover image next to the file is attached"""
        path = tmp_path / "Night Drive.mp3"
        path.write_bytes(b"not really audio")
        (tmp_path / "folder.jpg").write_bytes(b"\xff\xd8jpeg")

        metadata = read_song_metadata(path)

        assert base64.b64decode(metadata.artwork) == b"\xff\xd8jpeg"

    @pytest.mark.asyncio
    async def test_extract_off_loop(self, tmp_path):
        path = tmp_path / "Track.flac"
        path.write_bytes(b"")

        metadata = await extract_metadata(path)

        assert metadata.title == "Track"
