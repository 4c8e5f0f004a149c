import logging
import os

from errors import BlobStoreError

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """
    Filesystem-backed blob store. Files land under ``root_dir`` and are
    served by the app's static mount at ``<base_url><files_path>/<key>``.
    """

    def __init__(self, root_dir: str, base_url: str, files_path: str = "/files"):
        self.root_dir = os.path.abspath(root_dir)
        self.base_url = base_url.rstrip("/")
        self.files_path = "/" + files_path.strip("/")
        os.makedirs(self.root_dir, exist_ok=True)

    def _path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root_dir, key.lstrip("/")))
        if not path.startswith(self.root_dir + os.sep):
            raise BlobStoreError(f"Invalid blob key: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}{self.files_path}/{key.lstrip('/')}"

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path_for(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise BlobStoreError(f"Could not store {key}: {e}") from e
        logger.debug("Stored blob %s (%s, %d bytes)", key, content_type, len(data))
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise BlobStoreError(f"Could not read {key}: {e}") from e

    def delete(self, key: str):
        """Remove a blob; a key that was never stored is not an error"""
        path = self._path_for(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise BlobStoreError(f"Could not delete {key}: {e}") from e
        logger.debug("Deleted blob %s", key)


_store = None


def get_blob_store() -> LocalBlobStore:
    """Dependency for FastAPI routes to get the blob store"""
    global _store
    if _store is None:
        from config import get_settings

        settings = get_settings()
        _store = LocalBlobStore(settings.storage_dir, settings.public_base_url, settings.public_files_path)
    return _store
