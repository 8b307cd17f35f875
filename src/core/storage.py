"""
Storage Abstraction Layer - The Bridge Pattern

Blob store for source images, tile inputs and final composites. Keys are
grouped per job (jobs/{job_id}/...). The core never evicts anything: the
store is treated as a write-once cache.
"""

import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from datetime import datetime

from src.core.config import settings
from src.core.exceptions import StorageError

STATIC_PREFIX = "/static/storage/"


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        """
        Upload a file and return its unique storage key.

        Args:
            file_data: Raw bytes of the file
            filename: Original filename (only the extension is kept)
            folder: Subfolder/container prefix
            content_type: MIME type of the file

        Returns:
            Storage key that can be used with get_url()
        """
        pass

    @abstractmethod
    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """Get a URL path for serving the file from this service."""
        pass

    @abstractmethod
    async def get_public_url(self, storage_key: str) -> str:
        """Get an absolute URL an external service (the inference backend) can fetch."""
        pass

    @abstractmethod
    async def download(self, storage_key: str) -> bytes:
        """Read a stored file."""
        pass

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""
        pass

    @abstractmethod
    def key_from_url(self, url: str) -> Optional[str]:
        """Map one of our own URLs back to a storage key, or None for foreign URLs."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage", public_base_url: str = "http://localhost:8000"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _get_unique_filename(self, filename: str) -> str:
        """Generate a unique filename keeping the readable stem."""
        path = Path(filename)
        unique_id = uuid.uuid4().hex[:8]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{path.stem}_{timestamp}_{unique_id}{path.suffix}"

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        folder_path = self.base_path / folder
        unique_filename = self._get_unique_filename(filename)
        try:
            folder_path.mkdir(parents=True, exist_ok=True)
            with open(folder_path / unique_filename, "wb") as f:
                f.write(file_data)
        except OSError as e:
            raise StorageError(f"Failed to write {folder}/{unique_filename}: {e}")

        return f"{folder}/{unique_filename}"

    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """For local storage, return a relative path served by the static mount."""
        if not (self.base_path / storage_key).exists():
            raise StorageError(f"File not found: {storage_key}")
        return f"{STATIC_PREFIX}{storage_key}"

    async def get_public_url(self, storage_key: str) -> str:
        return f"{self.public_base_url}{await self.get_url(storage_key)}"

    async def download(self, storage_key: str) -> bytes:
        file_path = self.base_path / storage_key
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"File not found: {storage_key}")

    async def delete(self, storage_key: str) -> bool:
        file_path = self.base_path / storage_key
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    async def exists(self, storage_key: str) -> bool:
        return (self.base_path / storage_key).exists()

    def key_from_url(self, url: str) -> Optional[str]:
        if url.startswith(self.public_base_url + STATIC_PREFIX):
            url = url[len(self.public_base_url):]
        if url.startswith(STATIC_PREFIX):
            return url[len(STATIC_PREFIX):]
        return None


class StorageFactory:
    """
    Factory for creating storage instances.

    Only LocalStorage ships today; a cloud implementation plugs in here
    behind the same IStorage interface.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(
                base_path=settings.LOCAL_STORAGE_PATH,
                public_base_url=settings.PUBLIC_BASE_URL
            )
        return cls._instance

    @classmethod
    def set_storage(cls, storage: IStorage):
        """Swap the storage backend (tests, alternative deployments)."""
        cls._instance = storage

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
