"""
Unit tests for compression helpers (gfskeeper/backup/compression.py).
"""

import os
import tarfile
import time
from datetime import datetime
from pathlib import Path

import pytest

from gfskeeper.backup.compression import (
    create_archive, collect_files, should_exclude, generate_archive_filename,
    strip_archive_extension, sanitize_name, get_archive_size, CompressionError
)


class TestShouldExclude:
    """Test exclude pattern matching."""

    def test_no_patterns(self):
        assert should_exclude(Path('/data/file.txt'), []) is False

    def test_name_pattern(self):
        assert should_exclude(Path('/data/module.pyc'), ['*.pyc']) is True

    def test_directory_name(self):
        assert should_exclude(Path('/data/__pycache__'), ['__pycache__']) is True

    def test_recursive_pattern(self):
        assert should_exclude(Path('/data/a/b/debug.log'), ['**/*.log']) is True

    def test_non_matching(self):
        assert should_exclude(Path('/data/keep.txt'), ['*.pyc', '*.log']) is False


class TestCollectFiles:
    """Test file selection for archives."""

    def test_collects_all_files(self, temp_files):
        files = collect_files(str(temp_files))
        names = sorted(p.name for p in files)
        assert names == ['test_file.pyc', 'test_file1.txt', 'test_file2.log', 'test_file3.txt']

    def test_excludes_patterns(self, temp_files):
        files = collect_files(str(temp_files), ['*.pyc', 'nested'])
        names = sorted(p.name for p in files)
        assert names == ['test_file1.txt', 'test_file2.log']

    def test_newer_than_filters_old_files(self, temp_files):
        """Only files modified strictly after the reference time are kept."""
        old = time.time() - 3600
        for path in temp_files.rglob('*'):
            if path.is_file():
                os.utime(path, (old, old))
        changed = temp_files / 'test_file1.txt'
        os.utime(changed, (old + 100, old + 100))

        files = collect_files(str(temp_files), newer_than=old + 50)

        assert files == [changed]

    def test_single_file_source(self, temp_files):
        target = temp_files / 'test_file1.txt'
        assert collect_files(str(target)) == [target]

    def test_missing_source(self, tmp_path):
        with pytest.raises(CompressionError, match='does not exist'):
            collect_files(str(tmp_path / 'missing'))


class TestCreateArchive:
    """Test archive creation."""

    @pytest.mark.parametrize('fmt,ext', [
        ('tar.gz', 'tar.gz'), ('tar.bz2', 'tar.bz2'), ('tar.xz', 'tar.xz'), ('none', 'tar')
    ])
    def test_formats(self, temp_files, tmp_path, fmt, ext):
        output = tmp_path / 'out' / 'archive'
        archive_path, count = create_archive(str(temp_files), str(output), fmt, ['*.pyc'])

        assert archive_path == f"{output}.{ext}"
        assert count == 3
        with tarfile.open(archive_path, 'r:*') as tar:
            names = sorted(tar.getnames())
        assert names == ['source/nested/test_file3.txt', 'source/test_file1.txt', 'source/test_file2.log']

    def test_no_partial_file_left(self, temp_files, tmp_path):
        archive_path, _ = create_archive(str(temp_files), str(tmp_path / 'archive'))
        assert os.path.exists(archive_path)
        assert not os.path.exists(f"{archive_path}.partial")

    def test_invalid_format(self, temp_files, tmp_path):
        with pytest.raises(ValueError, match='Invalid compression format'):
            create_archive(str(temp_files), str(tmp_path / 'archive'), 'zip')

    def test_cancellation_removes_partial(self, temp_files, tmp_path):
        """Exceptions from the cancellation check propagate unchanged."""
        class Stop(Exception):
            pass

        def cancel():
            raise Stop()

        output = tmp_path / 'archive'
        with pytest.raises(Stop):
            create_archive(str(temp_files), str(output), cancellation_check=cancel)

        assert not os.path.exists(f"{output}.tar.gz")
        assert not os.path.exists(f"{output}.tar.gz.partial")


class TestNaming:
    """Test filename helpers."""

    def test_generate_archive_filename(self):
        name = generate_archive_filename('My Job!', 'tar.gz', 'FULL', datetime(2024, 1, 15, 12, 30, 0))
        assert name == 'My_Job_-20240115_123000-full.tar.gz'

    def test_generate_uncompressed_filename(self):
        name = generate_archive_filename('job', 'none', 'incremental', datetime(2024, 1, 15))
        assert name.endswith('-incremental.tar')

    @pytest.mark.parametrize('filename,expected', [
        ('a.tar.gz', 'a'), ('a.tar.bz2', 'a'), ('a.tar.xz', 'a'), ('a.tar', 'a'), ('a.bin', 'a'),
    ])
    def test_strip_archive_extension(self, filename, expected):
        assert strip_archive_extension(filename) == expected

    def test_sanitize_name(self):
        assert sanitize_name('web/db backup') == 'web_db_backup'

    def test_get_archive_size_missing(self, tmp_path):
        with pytest.raises(CompressionError, match='not found'):
            get_archive_size(str(tmp_path / 'nope.tar.gz'))
