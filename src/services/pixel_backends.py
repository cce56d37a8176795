"""Pixel backends a client can select from.

A backend only has to report whether it is available, whether it can read
raw pixel values, and be closable; decoding pixels is up to each backend.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from utils import get_config
from utils.exceptions import NetworkError
from utils.object_pool import ObjectPool

if TYPE_CHECKING:
    from PIL import Image

    from data.clients.omero import WebGatewayApi

    from .apis_handler import ApisHandler

logger = logging.getLogger(__name__)


class PixelBackend:
    """Base class of pixel backends.

    Subclasses call ``_set_available`` when their availability changes;
    listeners registered with ``add_availability_listener`` are then
    notified with the new value.
    """

    name: str = "Pixel backend"
    can_access_raw_pixels: bool = False

    def __init__(self, available: bool = False):
        self._available = available
        self._listeners: list[Callable[[bool], None]] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"{self.name} (available: {self.is_available})"

    @property
    def is_available(self) -> bool:
        with self._lock:
            return self._available

    def add_availability_listener(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_availability_listener(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _set_available(self, available: bool) -> None:
        with self._lock:
            if self._available == available:
                return
            self._available = available
            listeners = list(self._listeners)

        logger.debug("%s is now %s", self.name, "available" if available else "unavailable")
        for listener in listeners:
            try:
                listener(available)
            except Exception:
                logger.exception("Availability listener of %s failed", self.name)

    async def close(self) -> None:
        pass


class WebPixelBackend(PixelBackend):
    """Reads rendered RGB tiles through the webgateway API.

    Always available. At most ``max_connections`` tiles are downloaded at
    the same time.
    """

    name = "Web"
    can_access_raw_pixels = False

    def __init__(self, apis_handler: ApisHandler, max_connections: int | None = None):
        super().__init__(available=True)
        self._apis_handler = apis_handler
        self._pool: ObjectPool[WebGatewayApi] = ObjectPool(
            max_connections or get_config().omero.max_pixel_connections,
            lambda: apis_handler.webgateway_api,
            lambda _api: None,
        )

    @property
    def available_connections(self) -> int:
        return self._pool.available

    async def read_tile(
        self,
        image_id: int,
        z: int,
        t: int,
        level: int,
        tile_x: int,
        tile_y: int,
        tile_width: int,
        tile_height: int,
        quality: float = 0.9,
    ) -> Image.Image:
        """Download one tile, waiting for a free connection slot first.

        Raises:
            NetworkError: If no connection slot could be created, or the
                download failed
        """
        async with self._pool.acquired() as webgateway_api:
            if webgateway_api is None:
                raise NetworkError(f"No connection available to read image {image_id}")
            return await webgateway_api.read_tile(
                image_id, z, t, level, tile_x, tile_y, tile_width, tile_height, quality
            )
