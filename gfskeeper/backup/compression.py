"""
Compression handlers for backup archives.

Supports tar with:
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Incremental archives only include files modified since a reference time,
the same way `tar --newer` works against a snapshot marker.
"""

import os
import tarfile
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from datetime import datetime


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


EXTENSIONS = {
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


def should_exclude(path: Path, exclude_patterns: List[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    Args:
        path: Path to check
        exclude_patterns: Glob patterns matched against the full path or the name

    Returns:
        True if path matches any exclude pattern, False otherwise
    """
    if not exclude_patterns:
        return False

    path_str = str(path)
    path_name = path.name

    for pattern in exclude_patterns:
        # Match against full path or just the name
        if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
            return True
        # Also match against relative path patterns
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


def collect_files(
    source_path: str,
    exclude_patterns: Optional[List[str]] = None,
    newer_than: Optional[float] = None
) -> List[Path]:
    """
    List the files to archive under a source path.

    Args:
        source_path: File or directory to back up
        exclude_patterns: Glob patterns to skip (directories are pruned)
        newer_than: Only include files with an mtime at or after this timestamp

    Returns:
        Sorted list of file paths

    Raises:
        CompressionError: If the source does not exist
    """
    source = Path(source_path).expanduser()
    if not source.exists():
        raise CompressionError(f"Path does not exist: {source_path}")

    patterns = exclude_patterns or []

    if source.is_file():
        candidates = [source]
    else:
        candidates = []
        for root, dirs, files in os.walk(source):
            root_path = Path(root)
            dirs[:] = sorted(d for d in dirs if not should_exclude(root_path / d, patterns))
            for name in sorted(files):
                candidates.append(root_path / name)

    selected = []
    for path in candidates:
        if should_exclude(path, patterns):
            continue
        if newer_than is not None:
            try:
                # lstat: a symlink is archived as a link, dangling or not
                mtime = path.lstat().st_mtime
            except FileNotFoundError:
                # Removed since the directory walk
                continue
            if mtime < newer_than:
                continue
        selected.append(path)

    return selected


def create_archive(
    source_path: str,
    output_path: str,
    compression_format: str = 'tar.gz',
    exclude_patterns: Optional[List[str]] = None,
    newer_than: Optional[float] = None,
    cancellation_check: Optional[Callable[[], None]] = None
) -> Tuple[str, int]:
    """
    Create a compressed archive from a source path.

    The archive is written to `{archive}.partial` and renamed into place, so a
    crashed or cancelled run never leaves a complete-looking archive behind.

    Args:
        source_path: File or directory to archive
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'none')
        exclude_patterns: Glob patterns to skip
        newer_than: Only archive files modified at or after this timestamp (incremental)
        cancellation_check: Called between files; raises to abort

    Returns:
        Tuple of (full path to the created archive, number of files archived)

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    archive_path = f"{output_path}.{EXTENSIONS[compression_format]}"
    partial_path = f"{archive_path}.partial"

    base = Path(source_path).expanduser().parent

    try:
        Path(archive_path).parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(partial_path, MODES[compression_format]) as tar:
            # Snapshot marker: filesystem time before any file is read
            snapshot_time = os.stat(partial_path).st_mtime
            files = collect_files(source_path, exclude_patterns, newer_than)
            for file_path in files:
                if cancellation_check:
                    cancellation_check()
                # Keep paths relative to the source's parent: {source_name}/...
                tar.add(file_path, arcname=str(file_path.relative_to(base)), recursive=False)
        # The archive's mtime is the cut-off for incrementals built on it
        os.utime(partial_path, (snapshot_time, snapshot_time))
        os.replace(partial_path, archive_path)
        return archive_path, len(files)
    except Exception as e:
        # Clean up partial archive on failure or cancellation
        if os.path.exists(partial_path):
            try:
                os.remove(partial_path)
            except OSError:
                pass
        if isinstance(e, (OSError, ValueError, tarfile.TarError)):
            raise CompressionError(f"Failed to create archive: {e}")
        raise


def generate_archive_filename(job_name: str, compression_format: str, kind: str,
                              timestamp: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {job_name}-{YYYYMMDD_HHMMSS}-{kind}.{ext}

    Args:
        job_name: Name of the backup job
        compression_format: Compression format
        kind: 'full' or 'incremental'
        timestamp: Timestamp to embed (default: now, UTC)

    Returns:
        Filename (without path)
    """
    timestamp = (timestamp or datetime.utcnow()).strftime('%Y%m%d_%H%M%S')
    extension = EXTENSIONS.get(compression_format, 'tar.gz')
    return f"{sanitize_name(job_name)}-{timestamp}-{kind.lower()}.{extension}"


def sanitize_name(name: str) -> str:
    """Replace spaces and special chars with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in ('.tar.gz', '.tar.bz2', '.tar.xz', '.tar'):
        if filename.endswith(extension):
            return filename[:-len(extension)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
