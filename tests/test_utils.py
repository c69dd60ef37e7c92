"""Test utilities and helpers"""

from chillfi_client.utils import (
    ensure_directory,
    find_folder_album_art,
    format_bytes,
    is_audio_file,
    is_image_file,
    scan_audio_files,
)


class TestHelpers:
    """Test helper functions"""

    def test_file_types(self, tmp_path):
        assert is_audio_file(tmp_path / "Song.FLAC")
        assert not is_audio_file(tmp_path / "cover.jpg")
        assert is_image_file(tmp_path / "cover.JPG")

    def test_format_bytes(self):
        """Test byte count formatting"""
        assert format_bytes(512) == "512 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(5 * 1024 * 1024) == "5.0 MB"
        assert format_bytes(3 * 1024 ** 4) == "3072.0 GB"

    def test_ensure_directory(self, tmp_path):
        target = tmp_path / "a" / "b"
        assert ensure_directory(target) == target
        assert target.is_dir()


class TestScanning:
    """Test folder scanning"""

    def test_scan_folder_recursively(self, tmp_path):
        """Test folders expand to sorted audio files only"""
        album = tmp_path / "album"
        (album / "disc2").mkdir(parents=True)
        (album / "02.mp3").write_bytes(b"x")
        (album / "01.flac").write_bytes(b"x")
        (album / "disc2" / "01.m4a").write_bytes(b"x")
        (album / "cover.jpg").write_bytes(b"x")

        found = scan_audio_files([album])

        assert [p.relative_to(album).as_posix() for p in found] == ["01.flac", "02.mp3", "disc2/01.m4a"]

    def test_scan_drops_duplicates_and_non_audio(self, tmp_path):
        song = tmp_path / "song.mp3"
        song.write_bytes(b"x")
        notes = tmp_path / "notes.txt"
        notes.write_bytes(b"x")

        found = scan_audio_files([song, tmp_path, notes, tmp_path / "missing.mp3"])

        assert found == [song]

    def test_folder_album_art(self, tmp_path):
        """Test conventional names are matched case-insensitively in priority order"""
        (tmp_path / "Cover.JPG").write_bytes(b"x")
        (tmp_path / "front.jpg").write_bytes(b"x")

        assert find_folder_album_art(tmp_path).name == "Cover.JPG"

    def test_no_folder_album_art(self, tmp_path):
        (tmp_path / "random.jpg").write_bytes(b"x")

        assert find_folder_album_art(tmp_path) is None
        assert find_folder_album_art(tmp_path / "missing") is None
