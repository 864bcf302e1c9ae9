"""Blob storage collaborators."""

from .blob import BlobStorage, S3BlobStorage, StoredObject

__all__ = ["BlobStorage", "S3BlobStorage", "StoredObject"]
