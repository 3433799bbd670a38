from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class AbstractStorage(ABC):
    """
    Abstract base class for archive storage backends

    Holds the archived invoice documents. Implementations can use
    different storage mechanisms (filesystem, S3, etc.).
    """

    @abstractmethod
    def save(self, path: str, content: bytes, content_type: Optional[str] = None) -> None:
        """
        Save content to the specified path, replacing any existing object

        Args:
            path: Storage key
            content: Raw bytes to store
            content_type: Optional MIME type recorded with the object
        """
        pass

    @abstractmethod
    def load(self, path: str) -> bytes:
        """
        Load content from the specified path

        Raises:
            FileNotFoundError: If nothing is stored at ``path``
        """
        pass

    @abstractmethod
    def delete(self, path: str) -> bool:
        """
        Delete content at the specified path

        Returns:
            True if successful, False otherwise
        """
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    def get_metadata(self, path: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_url(self, path: str, expires_in: Optional[int] = None) -> str:
        """
        Get a URL for accessing the stored object

        Args:
            path: Storage key
            expires_in: Optional expiration time in seconds
        """
        pass
