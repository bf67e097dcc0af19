"""
Integrity verification for backup artifacts.

Digests are SHA-256 hex strings prefixed with the algorithm name
("sha256:<hex>") so the catalog can carry other algorithms later.
"""

import hashlib
import os
from typing import Callable, Optional


class VerificationError(Exception):
    """Raised when an artifact's digest cannot be computed or does not match."""
    pass


class IntegrityVerifier:
    """Computes and checks content digests for artifacts."""

    CHUNK_SIZE = 1024 * 1024  # 1MB

    def __init__(self, algorithm: str = 'sha256'):
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported digest algorithm: {algorithm}")
        self.algorithm = algorithm

    def digest(self, location: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Compute the digest of an artifact file.

        Args:
            location: Path to the artifact
            cancellation_check: Called between chunks; raises to abort

        Returns:
            Digest string, e.g. 'sha256:ab12...'

        Raises:
            VerificationError: If the file cannot be read
        """
        hasher = hashlib.new(self.algorithm)
        try:
            with open(location, 'rb') as f:
                while True:
                    if cancellation_check:
                        cancellation_check()
                    chunk = f.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    hasher.update(chunk)
        except FileNotFoundError:
            raise VerificationError(f"Artifact not found: {location}")
        except OSError as e:
            raise VerificationError(f"Failed to read artifact {location}: {e}")

        return f"{self.algorithm}:{hasher.hexdigest()}"

    def verify(self, location: str, size_bytes: Optional[int] = None,
               expected_digest: Optional[str] = None,
               cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Verify an artifact and return its digest.

        Args:
            location: Path to the artifact
            size_bytes: Size reported by the producer; checked against the file
            expected_digest: Digest reported by the producer, if any
            cancellation_check: Called between chunks; raises to abort

        Returns:
            Digest string

        Raises:
            VerificationError: On size mismatch, digest mismatch or read error
        """
        if size_bytes is not None:
            try:
                actual_size = os.path.getsize(location)
            except FileNotFoundError:
                raise VerificationError(f"Artifact not found: {location}")
            except OSError as e:
                raise VerificationError(f"Failed to stat artifact {location}: {e}")

            if actual_size != size_bytes:
                raise VerificationError(
                    f"Size mismatch for {location}: reported {size_bytes}, found {actual_size}"
                )

        digest = self.digest(location, cancellation_check)

        if expected_digest and expected_digest != digest:
            raise VerificationError(
                f"Digest mismatch for {location}: expected {expected_digest}, got {digest}"
            )

        return digest

    def matches(self, location: str, digest: str) -> bool:
        """Recompute a stored digest. Missing or unreadable files never match."""
        try:
            return self.digest(location) == digest
        except VerificationError:
            return False
