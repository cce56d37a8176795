"""Webgateway endpoints: icons, thumbnails, image metadata, tiles and rendering settings."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING
from urllib.parse import quote

from models.omero import ChannelSettings, EntityKind
from utils import get_config
from utils.exceptions import DecodeError
from utils.lru_cache import LoadingCache

from .request_sender import decode_image

if TYPE_CHECKING:
    from PIL import Image

    from .request_sender import RequestSender
    from .thumbnail_cache import ThumbnailCache

logger = logging.getLogger(__name__)

ICON_URL = "{}/static/webgateway/img/{}"
ICON_NAMES: dict[EntityKind, str] = {
    EntityKind.PROJECT: "folder16.png",
    EntityKind.DATASET: "folder_image16.png",
    EntityKind.WELL: "icon_folder.png",
}
ORPHANED_FOLDER_ICON_NAME = "folder_yellow16.png"
THUMBNAIL_URL = "{}/webgateway/render_thumbnail/{}/{}"
IMAGE_DATA_URL = "{}/webgateway/imgData/{}"
TILE_URL = (
    "{}/webgateway/render_image_region/{}/{}/{}/"
    "?tile={},{},{},{},{}&c={}&m=c&q={:f}"
)
TILE_CHANNEL_PARAMETER = quote("1|0:255$FF0000,2|0:255$00FF00,3|0:255$0000FF", safe="")
CHANGE_RENDERING_SETTINGS_URL = "{}/webgateway/saveImgRDef/{}/?m=c&c={}"
IVIEWER_REFERER = "{}/iviewer/?images={}"


class WebGatewayApi:
    """Endpoints of the webgateway application."""

    def __init__(
        self,
        web_server_uri: str,
        request_sender: RequestSender,
        token: str,
        thumbnail_cache: ThumbnailCache | None = None,
        metadata_cache_size: int | None = None,
    ):
        self.web_server_uri = web_server_uri
        self._request_sender = request_sender
        self._token = token
        self._thumbnail_cache = thumbnail_cache
        self._metadata_cache: LoadingCache[int, dict] = LoadingCache(
            metadata_cache_size or get_config().omero.metadata_cache_size
        )
        self._thumbnails_loading = 0
        self._thumbnails_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"WebGateway API of {self.web_server_uri}"

    @property
    def number_of_thumbnails_loading(self) -> int:
        with self._thumbnails_lock:
            return self._thumbnails_loading

    async def get_icon(self, kind: EntityKind) -> Image.Image:
        """Icon of projects, datasets or wells.

        Raises:
            ValueError: If this API does not serve the icon of ``kind``
        """
        if kind not in ICON_NAMES:
            raise ValueError(f"The webgateway API does not serve the icon of {kind}")
        logger.debug("Getting OMERO %s icon", kind.value)
        return await self._request_sender.get_image(
            ICON_URL.format(self.web_server_uri, ICON_NAMES[kind])
        )

    async def get_orphaned_folder_icon(self) -> Image.Image:
        logger.debug("Getting OMERO orphaned folder icon")
        return await self._request_sender.get_image(
            ICON_URL.format(self.web_server_uri, ORPHANED_FOLDER_ICON_NAME)
        )

    async def get_thumbnail(self, image_id: int, size: int) -> Image.Image:
        """Thumbnail of an image, served from the disk cache when possible.

        Args:
            image_id: ID of the image
            size: Size in pixels of the longest side

        Raises:
            DecodeError: If the server did not return an image
        """
        logger.debug("Getting thumbnail of image with ID %d and size %d", image_id, size)

        if self._thumbnail_cache is not None:
            cached = self._thumbnail_cache.get(self.web_server_uri, image_id, size)
            if cached is not None:
                try:
                    return decode_image(cached)
                except DecodeError:
                    logger.warning("Dropping corrupted cached thumbnail of image %d", image_id)
                    self._thumbnail_cache.delete(self.web_server_uri, image_id, size)

        with self._thumbnails_lock:
            self._thumbnails_loading += 1
        try:
            content = await self._request_sender.get_bytes(
                THUMBNAIL_URL.format(self.web_server_uri, image_id, size)
            )
            thumbnail = decode_image(content, f"thumbnail of image {image_id}")
        finally:
            with self._thumbnails_lock:
                self._thumbnails_loading -= 1

        if self._thumbnail_cache is not None:
            self._thumbnail_cache.set(self.web_server_uri, image_id, size, content)
        return thumbnail

    async def get_image_metadata(self, image_id: int) -> dict:
        """Raw ``imgData`` document of an image (cached)."""

        async def load() -> dict:
            logger.debug("Fetching metadata of image with ID %d (not already in cache)", image_id)
            return await self._request_sender.get_json_object(
                IMAGE_DATA_URL.format(self.web_server_uri, image_id)
            )

        return await self._metadata_cache.get_or_load(image_id, load)

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
        """Render one RGB tile of an image.

        Args:
            image_id: ID of the image
            z: Z-slice
            t: Timepoint
            level: Resolution level (0 is full resolution)
            tile_x: X coordinate of the tile in pixels
            tile_y: Y coordinate of the tile in pixels
            tile_width: Tile width in pixels
            tile_height: Tile height in pixels
            quality: JPEG quality between 0 and 1
        """
        logger.debug(
            "Reading tile (%d, %d) of image %d at level %d", tile_x, tile_y, image_id, level
        )
        return await self._request_sender.get_image(
            TILE_URL.format(
                self.web_server_uri,
                image_id,
                z,
                t,
                level,
                tile_x // tile_width,
                tile_y // tile_height,
                tile_width,
                tile_height,
                TILE_CHANNEL_PARAMETER,
                quality,
            )
        )

    async def change_channel_display_ranges_and_colors(
        self, image_id: int, channel_settings: Sequence[ChannelSettings]
    ) -> None:
        """Save the rendering settings of every channel of an image.

        Raises:
            DecodeError: If the server did not acknowledge the change
        """
        settings = ",".join(
            f"{i + 1}|{channel.min_display_range:f}:{channel.max_display_range:f}"
            f"${channel.hex_color}"
            for i, channel in enumerate(channel_settings)
        )
        uri = CHANGE_RENDERING_SETTINGS_URL.format(
            self.web_server_uri, image_id, quote(settings, safe="")
        )
        referer = IVIEWER_REFERER.format(self.web_server_uri, image_id)
        logger.debug(
            "Changing channel display ranges and colors of image with ID %d to %s",
            image_id,
            settings,
        )

        response = await self._request_sender.post(uri, "", referer, self._token)
        if response.strip() != "true":
            raise DecodeError(
                f"Change of rendering settings of image {image_id} not acknowledged",
                response,
            )
