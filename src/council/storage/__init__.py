"""
Storage subsystem: blob backend, versioned artifacts and run records.
"""

from .blobs import BlobRef, BlobStore, LocalStore
from .runs import RunRepository
from .versioned import VersionedArtifactStore

__all__ = [
    "BlobRef",
    "BlobStore",
    "LocalStore",
    "RunRepository",
    "VersionedArtifactStore",
]
