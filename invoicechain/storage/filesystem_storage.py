import logging
import mimetypes
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .abstract_storage import AbstractStorage

logger = logging.getLogger(__name__)


class FileSystemStorage(AbstractStorage):
    """
    File system implementation of the storage backend

    Stores archived documents below a base directory.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize filesystem storage

        Args:
            config: Storage configuration dictionary with at least:
                   - path: Base path for storage
        """
        self.config = config
        self.base_path = Path(config.get('path', 'storage/archive'))
        self.ensure_storage_exists()

    def ensure_storage_exists(self) -> None:
        """Ensure storage directory exists"""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_path(self, key: str) -> Path:
        """
        Get full path for a storage key with path traversal protection

        Raises:
            ValueError: If path traversal is detected or key is invalid
        """
        if not key:
            raise ValueError("Storage key cannot be empty")

        # Reject traversal before normalization
        if '..' in Path(key).parts or os.path.isabs(key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        normalized_key = os.path.normpath(key)
        full_path = (self.base_path / normalized_key).resolve()

        # Ensure the resolved path is still within base_path
        try:
            full_path.relative_to(self.base_path.resolve())
        except ValueError:
            raise ValueError(f"Invalid storage key: {key} - path outside storage directory")

        return full_path

    def save(self, path: str, content: bytes, content_type: Optional[str] = None) -> None:
        target = self.get_path(path)

        if target.is_symlink():
            raise ValueError(f"Invalid storage key: {path} - symlinks not allowed")

        target.parent.mkdir(parents=True, exist_ok=True)

        # Atomic write so readers never see a partial file
        temp_path = target.with_suffix(target.suffix + '.tmp')
        try:
            temp_path.write_bytes(content)
            temp_path.replace(target)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        logger.debug(f"Saved {len(content)} bytes to {target}")

    def load(self, path: str) -> bytes:
        target = self.get_path(path)
        if not target.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return target.read_bytes()

    def delete(self, path: str) -> bool:
        target = self.get_path(path)
        if not target.exists():
            return False
        target.unlink()
        return True

    def exists(self, path: str) -> bool:
        return self.get_path(path).exists()

    def get_metadata(self, path: str) -> Dict[str, Any]:
        target = self.get_path(path)
        if not target.exists():
            raise FileNotFoundError(f"File not found: {path}")
        stat = target.stat()
        return {
            'size': stat.st_size,
            'modified_at': datetime.fromtimestamp(stat.st_mtime),
            'content_type': mimetypes.guess_type(target.name)[0] or 'application/octet-stream'
        }

    def get_url(self, path: str, expires_in: Optional[int] = None) -> str:
        """Get a file:// URL for the stored document"""
        return self.get_path(path).as_uri()
