"""BlobStore protocol for content-addressable raw evidence storage.

This protocol defines the interface for blob backends used by:
- core/blob_store.py (FilesystemBlobStore implementation)
- engine/raw_store.py (RawStore, which adds versioning and metadata)

Backends are an external collaborator; only this contract is fixed.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class BlobStore(Protocol):
    """Protocol for blob storage backends.

    All implementations must provide content-addressable storage
    where blobs are stored by their SHA-256 hex digest and are never
    overwritten or deleted: raw evidence is never lost.
    """

    def store(self, content: bytes) -> str:
        """Store content and return its digest.

        Raises:
            IntegrityError: If a blob already stored under the digest is corrupt
        """
        ...

    def retrieve(self, digest: str) -> bytes:
        """Retrieve content by digest with integrity verification.

        Raises:
            KeyError: If content not found
            IntegrityError: If content doesn't match the digest
        """
        ...

    def exists(self, digest: str) -> bool:
        """Check if content exists."""
        ...

