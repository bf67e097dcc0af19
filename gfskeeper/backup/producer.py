"""
Archive producers.

The orchestrator only talks to the two-method producer contract:

    produce(source_path, kind, based_on_location, cancellation_check) -> ProducedArchive
    delete(location)

TarArchiveProducer is the default local-filesystem backend. Any other backend
(cloud object store, different compression) plugs in by implementing the same
two methods.
"""

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from gfskeeper.models import Kind
from .clock import utc_now
from .compression import (
    create_archive,
    generate_archive_filename,
    strip_archive_extension,
    get_archive_size,
    sanitize_name,
    CompressionError,
    EXTENSIONS
)

logger = logging.getLogger(__name__)


class ProductionError(Exception):
    """Raised when an archive could not be produced or removed."""
    pass


class ProducedArchive:
    """Result of a successful produce() call."""

    def __init__(self, location: str, size_bytes: int, digest: Optional[str] = None,
                 file_count: Optional[int] = None):
        self.location = location
        self.size_bytes = size_bytes
        self.digest = digest
        self.file_count = file_count

    def __repr__(self):
        return f'<ProducedArchive {self.location} ({self.size_bytes} bytes)>'


class ArchiveProducer:
    """Producer contract. Subclasses implement produce() and delete()."""

    def produce(self, source_path: str, kind: Kind, based_on_location: Optional[str] = None,
                cancellation_check: Optional[Callable[[], None]] = None) -> ProducedArchive:
        raise NotImplementedError

    def delete(self, location: str):
        raise NotImplementedError


class TarArchiveProducer(ArchiveProducer):
    """
    Produces tar archives on the local filesystem.

    Archives are laid out as {base_dir}/{job_name}/{YYYY}/{MM}/{filename}.
    FULL archives contain every file of the source; INCREMENTAL archives only
    contain files modified since the base archive's production started.
    """

    def __init__(self, base_dir: str, job_name: str, compression_format: str = 'tar.gz',
                 exclude_patterns: Optional[List[str]] = None, clock=None):
        """
        Initialize tar producer.

        Args:
            base_dir: Root directory for archives
            job_name: Name of the backup job (used for directory layout)
            compression_format: 'tar.gz', 'tar.bz2', 'tar.xz' or 'none'
            exclude_patterns: Glob patterns to skip
            clock: Callable returning the current naive UTC datetime
        """
        self.base_dir = Path(base_dir)
        self.job_name = job_name
        self.compression_format = compression_format
        self.exclude_patterns = exclude_patterns or []
        self.clock = clock or utc_now

    def produce(self, source_path: str, kind: Kind, based_on_location: Optional[str] = None,
                cancellation_check: Optional[Callable[[], None]] = None) -> ProducedArchive:
        """
        Create a FULL or INCREMENTAL archive of source_path.

        Raises:
            ProductionError: If the archive cannot be created
        """
        kind = Kind(kind)
        newer_than = None

        if kind == Kind.INCREMENTAL:
            if not based_on_location:
                raise ProductionError("Incremental archive requires a base archive")
            try:
                # Base archive mtime is the time its production started
                newer_than = os.path.getmtime(based_on_location)
            except OSError as e:
                raise ProductionError(f"Base archive unavailable: {based_on_location}: {e}")

        output_base = self._output_base(kind)

        try:
            archive_path, file_count = create_archive(
                source_path,
                output_base,
                self.compression_format,
                exclude_patterns=self.exclude_patterns,
                newer_than=newer_than,
                cancellation_check=cancellation_check
            )
            size_bytes = get_archive_size(archive_path)
        except (CompressionError, ValueError, OSError) as e:
            raise ProductionError(str(e))

        logger.info(
            f"Produced {kind.value.lower()} archive {archive_path} "
            f"({file_count} files, {size_bytes} bytes)"
        )
        return ProducedArchive(archive_path, size_bytes, file_count=file_count)

    def delete(self, location: str):
        """
        Remove an archive file. Missing files are treated as already deleted.

        Raises:
            ProductionError: If the file exists but cannot be removed
        """
        path = Path(location)
        try:
            if path.exists():
                path.unlink()
        except PermissionError as e:
            raise ProductionError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise ProductionError(f"Failed to delete archive {path}: {e}")

    def _output_base(self, kind: Kind) -> str:
        """Archive path without extension, unique within the job directory."""
        now = self.clock()
        filename = generate_archive_filename(self.job_name, self.compression_format, kind.value, now)
        directory = self.base_dir / sanitize_name(self.job_name) / f"{now.year}" / f"{now.month:02d}"
        base = str(directory / strip_archive_extension(filename))
        extension = EXTENSIONS.get(self.compression_format)
        if extension is None:
            raise ProductionError(f"Invalid compression format: {self.compression_format}")

        candidate = base
        counter = 1
        while os.path.exists(f"{candidate}.{extension}"):
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate
