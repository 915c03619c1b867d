# src/fundtrace/core/blob_store.py
"""
Filesystem blob store for raw evidence bytes.

Uses content-addressable storage (digest-based) for:
- Automatic deduplication of byte-identical uploads
- Integrity verification on every retrieval
- Write-once semantics: an existing blob is verified, never overwritten
"""

import hashlib
import hmac
import os
import re
import tempfile
from pathlib import Path

from fundtrace.contracts.errors import IntegrityError

__all__ = ["FilesystemBlobStore"]

# SHA-256 hex digest: exactly 64 lowercase hex characters
_SHA256_HEX_PATTERN = re.compile(r"^[a-f0-9]{64}$")


class FilesystemBlobStore:
    """Filesystem-based blob store.

    Stores blobs in a directory structure using first 2 characters
    of the digest as subdirectory for better file distribution.

    Structure: base_path/ab/abcdef123...
    """

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for_digest(self, digest: str) -> Path:
        """Get filesystem path for a digest.

        Raises:
            ValueError: If digest is not a valid SHA-256 hex digest
                        or if resolved path escapes base_path
        """
        if not _SHA256_HEX_PATTERN.match(digest):
            raise ValueError(f"Invalid digest: must be 64 lowercase hex characters, got {repr(digest)[:50]}")

        path = self.base_path / digest[:2] / digest

        try:
            resolved = path.resolve()
            base_resolved = self.base_path.resolve()
            if not resolved.is_relative_to(base_resolved):
                raise ValueError(f"Invalid digest: path traversal detected, resolved path {resolved} is not under {base_resolved}")
        except (OSError, ValueError) as e:
            raise ValueError(f"Invalid digest: path resolution failed for {repr(digest)[:50]}") from e

        return path

    def store(self, content: bytes) -> str:
        """Store content and return its digest.

        If the blob already exists, verifies integrity before returning.
        New blobs are written to a temporary file and renamed into place so
        a crash never leaves a truncated blob under a valid digest.

        Raises:
            IntegrityError: If existing file doesn't match expected digest
        """
        digest = hashlib.sha256(content).hexdigest()
        path = self._path_for_digest(digest)

        if path.exists():
            existing_content = path.read_bytes()
            actual = hashlib.sha256(existing_content).hexdigest()
            if not hmac.compare_digest(actual, digest):
                raise IntegrityError(f"Blob integrity check failed on store: existing file has digest {actual}, expected {digest}")
            return digest

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return digest

    def retrieve(self, digest: str) -> bytes:
        """Retrieve content by digest with integrity verification.

        Raises:
            KeyError: If content not found
            IntegrityError: If content doesn't match expected digest
        """
        path = self._path_for_digest(digest)
        if not path.exists():
            raise KeyError(f"Blob not found: {digest}")

        content = path.read_bytes()
        actual = hashlib.sha256(content).hexdigest()

        # Timing-safe comparison
        if not hmac.compare_digest(actual, digest):
            raise IntegrityError(f"Blob integrity check failed: expected {digest}, got {actual}")

        return content

    def exists(self, digest: str) -> bool:
        """Check if content exists."""
        return self._path_for_digest(digest).exists()

