"""Tests for directory scanning, language detection and binary sniffing."""

import os

import pytest

from memsync.scanner import (
    FileScanner,
    IGNORED_EXTENSIONS,
    detect_language,
    is_binary,
    relative_path,
)


def _names(result, root):
    return sorted(relative_path(str(root), p) for p in result.files)


class TestScanRules:

    def test_returns_text_files_and_skips_media(self, project_dir):
        result = FileScanner().scan(str(project_dir))
        assert _names(result, project_dir) == ["README.md", "docs/notes.txt", "main.py"]
        assert [s.path for s in result.skipped] == ["logo.png"]
        assert result.scanned == 4

    def test_paths_are_absolute(self, project_dir):
        result = FileScanner().scan(str(project_dir))
        assert all(os.path.isabs(p) for p in result)

    def test_hidden_directory_subtree_skipped(self, tmp_path):
        (tmp_path / ".git" / "objects").mkdir(parents=True)
        (tmp_path / ".git" / "config").write_text("[core]")
        (tmp_path / ".git" / "objects" / "ab").write_text("blob")
        (tmp_path / "a.txt").write_text("a")
        result = FileScanner().scan(str(tmp_path))
        assert _names(result, tmp_path) == ["a.txt"]
        # Hidden subtrees are not walked, so nothing inside counts as scanned
        assert result.scanned == 1

    def test_hidden_file_skipped(self, tmp_path):
        (tmp_path / ".env").write_text("SECRET=1")
        (tmp_path / "app.py").write_text("x = 1")
        result = FileScanner().scan(str(tmp_path))
        assert _names(result, tmp_path) == ["app.py"]
        assert result.skipped[0].reason == "hidden file"

    def test_extension_check_is_case_insensitive(self, tmp_path):
        (tmp_path / "PHOTO.JPG").write_bytes(b"jpeg")
        result = FileScanner().scan(str(tmp_path))
        assert result.files == []
        assert "ignored extension" in result.skipped[0].reason

    def test_oversized_file_skipped(self, tmp_path):
        (tmp_path / "big.txt").write_text("x" * 2048)
        (tmp_path / "small.txt").write_text("x" * 10)
        result = FileScanner(max_file_size=1024).scan(str(tmp_path))
        assert _names(result, tmp_path) == ["small.txt"]
        assert result.skipped[0].reason.startswith("too large")

    def test_file_at_ceiling_is_kept(self, tmp_path):
        (tmp_path / "exact.txt").write_text("x" * 1024)
        result = FileScanner(max_file_size=1024).scan(str(tmp_path))
        assert len(result) == 1

    def test_extra_ignored_extensions(self, tmp_path):
        (tmp_path / "data.csv").write_text("a,b")
        (tmp_path / "lock.lock").write_text("x")
        result = FileScanner(ignored_extensions=["csv", ".LOCK"]).scan(str(tmp_path))
        assert result.files == []

    def test_denylist_covers_media_archives_and_binaries(self):
        for ext in (".png", ".mp4", ".zip", ".exe", ".pdf", ".pyc", ".docx"):
            assert ext in IGNORED_EXTENSIONS

    def test_filtered_files_never_returned(self, tmp_path):
        (tmp_path / ".hidden").mkdir()
        (tmp_path / ".hidden" / "x.py").write_text("x")
        (tmp_path / ".dot.py").write_text("x")
        (tmp_path / "a.gif").write_bytes(b"GIF89a")
        (tmp_path / "big.md").write_text("y" * 300)
        result = FileScanner(max_file_size=100).scan(str(tmp_path))
        assert result.files == []
        assert result.scanned == len(result.skipped) == 3


class TestScanErrors:

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(ValueError, match="Not a directory"):
            FileScanner().scan(str(tmp_path / "nope"))

    def test_file_as_root_raises(self, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(ValueError):
            FileScanner().scan(str(f))

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can list any directory")
    def test_unlistable_directory_aborts_scan(self, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        (locked / "a.txt").write_text("a")
        locked.chmod(0)
        try:
            with pytest.raises(OSError):
                FileScanner().scan(str(tmp_path))
        finally:
            locked.chmod(0o755)


class TestLanguage:

    def test_known_extensions(self):
        assert detect_language("src/main.go") == "Go"
        assert detect_language("app.py") == "Python"
        assert detect_language("README.md") == "Markdown"
        assert detect_language("Component.TSX") == "TypeScript (React)"

    def test_unknown_extension(self):
        assert detect_language("Makefile") == "unknown"
        assert detect_language("data.xyz") == "unknown"


class TestIsBinary:

    def test_plain_text(self):
        assert is_binary(b"hello\tworld\r\n") is False

    def test_nul_byte_anywhere(self):
        assert is_binary(b"text" * 1000 + b"\x00") is True

    def test_control_ratio_above_ten_percent(self):
        # 2 control bytes in 10 = 20%
        assert is_binary(b"\x01\x02abcdefgh") is True

    def test_control_ratio_at_ten_percent_is_text(self):
        assert is_binary(b"\x01" + b"a" * 9) is False

    def test_empty(self):
        assert is_binary(b"") is False
