"""Iviewer endpoints: image settings and ROI persistence."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from models.omero import ImageSettings, Shape
from utils.exceptions import DecodeError

if TYPE_CHECKING:
    from .request_sender import RequestSender

logger = logging.getLogger(__name__)

ROIS_URL = "{}/iviewer/persist_rois/"
ROIS_REFERER_URL = "{}/iviewer/?images={}"
IMAGE_SETTINGS_URL = "{}/iviewer/image_data/{}/"


class IViewerApi:
    """Endpoints of the iviewer application."""

    def __init__(self, web_server_uri: str, request_sender: RequestSender, token: str):
        self.web_server_uri = web_server_uri
        self._request_sender = request_sender
        self._token = token

    def __repr__(self) -> str:
        return f"IViewer API of {self.web_server_uri}"

    async def get_image_settings(self, image_id: int) -> ImageSettings:
        logger.debug("Getting image settings of image with ID %d", image_id)
        image_data = await self._request_sender.get_json_object(
            IMAGE_SETTINGS_URL.format(self.web_server_uri, image_id)
        )
        return ImageSettings.from_image_data(image_data)

    async def add_shapes(self, image_id: int, shapes: Sequence[Shape]) -> None:
        """Create new ROIs on an image, one per shape."""
        if not shapes:
            logger.debug("No shapes to add to image with ID %d", image_id)
            return

        await self._persist_rois(
            image_id,
            {
                "count": len(shapes),
                "empty_rois": {},
                "new_and_deleted": [],
                "deleted": {},
                "new": [shape.to_json() for shape in shapes],
                "modified": [],
            },
        )

    async def delete_shapes(self, image_id: int, shapes: Sequence[Shape]) -> None:
        """Delete existing shapes (identified by their ROI and shape IDs)."""
        if not shapes:
            logger.debug("No shapes to delete from image with ID %d", image_id)
            return

        deleted: dict[str, list[str]] = {}
        for shape in shapes:
            deleted.setdefault(str(shape.roi_id), []).append(shape.old_id)

        await self._persist_rois(
            image_id,
            {
                "count": len(shapes),
                "empty_rois": {},
                "new_and_deleted": [],
                "deleted": deleted,
                "new": [],
                "modified": [],
            },
        )

    async def _persist_rois(self, image_id: int, rois: dict) -> None:
        body = json.dumps({"imageId": image_id, "rois": rois})
        referer = ROIS_REFERER_URL.format(self.web_server_uri, image_id)
        logger.debug("Sending ROIs %s to image with ID %d", rois, image_id)

        response = await self._request_sender.post_json(
            ROIS_URL.format(self.web_server_uri), body, referer, self._token
        )
        if "error" in response.lower():
            raise DecodeError(f"Error when persisting ROIs of image {image_id}", response)
