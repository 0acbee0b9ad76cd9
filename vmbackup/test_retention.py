"""
Tests for archive rotation and the local archive sink
"""
import os
from unittest.mock import patch

import pytest

from vmbackup.exceptions import RotationError
from vmbackup.retention import LocalDirectorySink, RetentionManager


def write(path, content):
    path.write_text(content)
    return path


def generation_contents(manager, base):
    return {index: path.read_text() for index, path in manager.generations(base)}


class TestRetentionManager:
    """Test cases for numbered generations"""

    def test_first_archive_becomes_generation_zero(self, tmp_path):
        """Test first rotation"""
        manager = RetentionManager(3)
        base = write(tmp_path / "web01.tgz.enc", "run1")

        result = manager.rotate(base)

        assert result.current == tmp_path / "web01.tgz.enc.0"
        assert not base.exists()
        assert generation_contents(manager, base) == {0: "run1"}

    def test_generations_shift_and_cap(self, tmp_path):
        """Test generations shift and are capped"""
        manager = RetentionManager(3)
        base = tmp_path / "web01.tgz.enc"

        for run in range(1, 6):
            write(base, f"run{run}")
            manager.rotate(base)

        assert generation_contents(manager, base) == {0: "run5", 1: "run4", 2: "run3"}

    def test_rotation_without_new_archive_is_idempotent(self, tmp_path):
        """Test repeated rotation without a new archive"""
        manager = RetentionManager(2)
        base = tmp_path / "web01.tgz.enc"
        for run in range(3):
            write(base, f"run{run}")
            manager.rotate(base)
        before = generation_contents(manager, base)

        manager.rotate(base)
        manager.rotate(base)

        assert generation_contents(manager, base) == before

    def test_trims_excess_generations(self, tmp_path):
        """Lowering the limit removes the oldest generations"""
        base = tmp_path / "web01.tgz.enc"
        for index in range(5):
            write(RetentionManager.generation_path(base, index), f"gen{index}")

        result = RetentionManager(2).rotate(base)

        assert sorted(p.name for p in result.removed) == ["web01.tgz.enc.2", "web01.tgz.enc.3",
                                                          "web01.tgz.enc.4"]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["web01.tgz.enc.0", "web01.tgz.enc.1"]

    def test_other_vms_untouched(self, tmp_path):
        """Test rotation leaves other files alone"""
        manager = RetentionManager(1)
        write(tmp_path / "web01.tgz.enc.0", "web")
        write(tmp_path / "web01.tgz.enc.backup.0", "unrelated")
        write(tmp_path / "web011.tgz.enc.0", "other vm")
        base = write(tmp_path / "web01.tgz.enc", "new")

        manager.rotate(base)

        assert (tmp_path / "web01.tgz.enc.backup.0").read_text() == "unrelated"
        assert (tmp_path / "web011.tgz.enc.0").read_text() == "other vm"
        assert (tmp_path / "web01.tgz.enc.0").read_text() == "new"

    def test_failed_shift_keeps_new_archive(self, tmp_path):
        """Test failed shift"""
        manager = RetentionManager(3)
        base = tmp_path / "web01.tgz.enc"
        write(RetentionManager.generation_path(base, 0), "old")
        write(base, "new")

        with patch("vmbackup.retention.os.replace", side_effect=PermissionError("read-only")):
            with pytest.raises(RotationError) as exc_info:
                manager.rotate(base)

        assert exc_info.value.current_path == base
        assert base.read_text() == "new"
        assert RetentionManager.generation_path(base, 0).read_text() == "old"

    def test_invalid_versions(self):
        """Test invalid generation count"""
        with pytest.raises(ValueError):
            RetentionManager(0)


class TestLocalDirectorySink:
    """Test cases for storing archives in the export directory"""

    def test_store_places_newest_generation(self, tmp_path):
        """Test storing an archive"""
        sink = LocalDirectorySink(tmp_path, RetentionManager(20))
        staged = write(sink.staging_path("web01"), "archive")

        stored = sink.store(staged, "web01")

        assert stored == tmp_path / "web01.tgz.enc.0"
        assert stored.read_text() == "archive"
        assert not staged.exists()

    def test_store_files_stale_unrotated_archive_first(self, tmp_path):
        """Test storing next to an unrotated archive"""
        sink = LocalDirectorySink(tmp_path, RetentionManager(20))
        write(tmp_path / "web01.tgz.enc", "left over")
        staged = write(sink.staging_path("web01"), "fresh")

        sink.store(staged, "web01")

        assert (tmp_path / "web01.tgz.enc.0").read_text() == "fresh"
        assert (tmp_path / "web01.tgz.enc.1").read_text() == "left over"

    def test_store_from_other_directory(self, tmp_path):
        """Test storing an archive from another directory"""
        export_dir = tmp_path / "export"
        export_dir.mkdir()
        staged = write(tmp_path / "elsewhere.tgz.enc", "archive")
        sink = LocalDirectorySink(export_dir, RetentionManager(2), suffix=".tar.gz.aes")

        stored = sink.store(staged, "db02")

        assert stored == export_dir / "db02.tar.gz.aes.0"
        assert os.listdir(export_dir) == ["db02.tar.gz.aes.0"]

    def test_twenty_generations_cap(self, tmp_path):
        """Test twenty generations"""
        sink = LocalDirectorySink(tmp_path, RetentionManager(20))
        for run in range(25):
            sink.store(write(sink.staging_path("web01"), f"run{run}"), "web01")

        names = sorted(os.listdir(tmp_path))
        assert len(names) == 20
        assert (tmp_path / "web01.tgz.enc.0").read_text() == "run24"
        assert (tmp_path / "web01.tgz.enc.19").read_text() == "run5"

    def test_stale_archive_that_cannot_be_rotated(self, tmp_path):
        """A new archive is kept under a unique name when an old one blocks the base name"""
        sink = LocalDirectorySink(tmp_path, RetentionManager(20))
        write(tmp_path / "web01.tgz.enc", "previous run")
        write(tmp_path / "web01.tgz.enc.0", "older")
        staged = write(sink.staging_path("web01"), "fresh")

        with patch("vmbackup.retention.os.replace", side_effect=PermissionError("read-only")):
            with pytest.raises(RotationError) as exc_info:
                sink.store(staged, "web01")

        held = exc_info.value.current_path
        assert held.name.startswith("web01.tgz.enc.held-")
        assert held.read_text() == "fresh"
        assert not staged.exists()
        assert (tmp_path / "web01.tgz.enc").read_text() == "previous run"
        assert (tmp_path / "web01.tgz.enc.0").read_text() == "older"
        assert str(held) in str(exc_info.value)
