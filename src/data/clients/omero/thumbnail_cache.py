"""Disk-based cache for rendered thumbnails using diskcache."""

import hashlib
import logging
from pathlib import Path

import diskcache

from utils import get_config

logger = logging.getLogger(__name__)


class ThumbnailCache:
    """Wrapper around diskcache storing encoded thumbnail bytes."""

    def __init__(self, cache_dir: str | Path | None = None):
        """Initialize the cache.

        Args:
            cache_dir: Directory for cache storage (defaults to config.omero.thumbnail_cache_dir_path)
        """
        if cache_dir is None:
            cache_dir = get_config().omero.thumbnail_cache_dir_path
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache = diskcache.Cache(str(self.cache_dir))

    def make_key(self, web_server_uri: str, image_id: int, size: int) -> str:
        key_input = f"{web_server_uri}:{image_id}:{size}"
        return hashlib.sha256(key_input.encode()).hexdigest()

    def get(self, web_server_uri: str, image_id: int, size: int) -> bytes | None:
        key = self.make_key(web_server_uri, image_id, size)
        data = self.cache.get(key)
        if data is None:
            return None
        if not isinstance(data, bytes):
            self.cache.delete(key)
            return None
        logger.debug("Thumbnail cache hit for image %d (size %d)", image_id, size)
        return data

    def set(self, web_server_uri: str, image_id: int, size: int, data: bytes) -> None:
        self.cache.set(self.make_key(web_server_uri, image_id, size), data)

    def delete(self, web_server_uri: str, image_id: int, size: int) -> None:
        self.cache.delete(self.make_key(web_server_uri, image_id, size))

    def clear(self) -> None:
        """Clear all cached thumbnails."""
        self.cache.clear()

    def close(self) -> None:
        self.cache.close()
