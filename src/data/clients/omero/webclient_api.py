"""Webclient endpoints: keep-alive, logout, icons, HTML scraping and annotations."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from models.omero import (
    AnnotationGroup,
    EntityKind,
    EntityRef,
    FileAnnotation,
    MapAnnotation,
)
from utils.exceptions import DecodeError, InvalidArgument, NetworkError

from .entity_uris import create_entity_uri

if TYPE_CHECKING:
    from PIL import Image

    from .request_sender import RequestSender

logger = logging.getLogger(__name__)

PING_URL = "{}/webclient/keepalive_ping/"
LOGOUT_URL = "{}/webclient/logout/"
WEBCLIENT_URL = "{}/webclient/"
PARENTS_OF_IMAGE_URL = "{}/webclient/api/paths_to_object/?image={}"
ANNOTATIONS_URL = "{}/webclient/api/annotations/?{}={}"
KEY_VALUES_URL = "{}/webclient/annotate_map/"
IMAGE_NAME_URL = "{}/webclient/action/savename/image/{}/"
CHANNEL_NAMES_URL = "{}/webclient/edit_channel_names/{}/"
SEND_ATTACHMENT_URL = "{}/webclient/annotate_file/"
DELETE_ATTACHMENT_URL = "{}/webclient/action/delete/file/{}/"
USER_ID_PATTERN = re.compile(r"WEBCLIENT\.USER = \{'id': (.+?), 'fullName':")

ICON_URLS: dict[EntityKind, str] = {
    EntityKind.IMAGE: "{}/static/webclient/image/image16.png",
    EntityKind.SCREEN: "{}/static/webclient/image/folder_screen16.png",
    EntityKind.PLATE: "{}/static/webclient/image/folder_plate16.png",
    EntityKind.PLATE_ACQUISITION: "{}/static/webclient/image/run16.png",
}

ANNOTATABLE_KINDS = frozenset(EntityKind) - {EntityKind.WELL}


def _check_acknowledged(response: str, key: str, action: str) -> dict:
    try:
        data = json.loads(response)
    except json.JSONDecodeError as e:
        raise DecodeError(f"{action} not acknowledged: {e}", response) from e
    if not isinstance(data, dict) or key not in data:
        raise DecodeError(f"{action} not acknowledged", response)
    return data


class WebclientApi:
    """Endpoints of the webclient application."""

    def __init__(self, web_server_uri: str, request_sender: RequestSender, token: str):
        self.web_server_uri = web_server_uri
        self._request_sender = request_sender
        self._token = token
        self._ping_uri = PING_URL.format(web_server_uri)

    def __repr__(self) -> str:
        return f"Webclient API of {self.web_server_uri}"

    def get_entity_uri(self, ref: EntityRef) -> str:
        return create_entity_uri(self.web_server_uri, ref)

    async def ping(self) -> None:
        """Keep the session alive.

        Raises:
            NetworkError: If the keep-alive link is not reachable
        """
        logger.debug("Sending ping to %s", self.web_server_uri)
        if not await self._request_sender.is_link_reachable(
            self._ping_uri, "GET", follow_redirects=True, use_cookies=True
        ):
            raise NetworkError(f"Ping to {self._ping_uri} failed")

    async def logout(self) -> None:
        logger.debug("Sending logout request to %s", self.web_server_uri)
        uri = LOGOUT_URL.format(self.web_server_uri)
        await self._request_sender.post(
            uri, f"csrfmiddlewaretoken={self._token}", uri, self._token
        )

    async def get_public_user_id(self) -> int:
        """ID of the public (anonymous) user, scraped from the webclient page.

        Raises:
            DecodeError: If the page does not contain the user ID
        """
        logger.debug("Getting ID of the public user of %s", self.web_server_uri)
        page = await self._request_sender.get(WEBCLIENT_URL.format(self.web_server_uri))
        match = USER_ID_PATTERN.search(page)
        if match is None:
            raise DecodeError(f"Pattern {USER_ID_PATTERN.pattern} not found", page)
        try:
            return int(match.group(1))
        except ValueError as e:
            raise DecodeError(f"Invalid user ID {match.group(1)}", page) from e

    async def get_parents_of_image(self, image_id: int) -> list[EntityRef]:
        """Every container of an image, as (kind, id) path segments.

        Segments of an unknown type are skipped.

        Raises:
            DecodeError: If the response has no ``paths`` array of arrays
        """
        logger.debug("Getting all parents of image with ID %d", image_id)
        response = await self._request_sender.get_json_object(
            PARENTS_OF_IMAGE_URL.format(self.web_server_uri, image_id)
        )
        paths = response.get("paths")
        if not isinstance(paths, list) or not all(isinstance(p, list) for p in paths):
            raise DecodeError("'paths' array not found", response)

        parents = []
        for path in paths:
            for segment in path:
                kind = (
                    EntityKind.from_api_name(segment.get("type"))
                    if isinstance(segment, dict) and isinstance(segment.get("type"), str)
                    else None
                )
                segment_id = segment.get("id") if isinstance(segment, dict) else None
                if kind is None or not isinstance(segment_id, int):
                    logger.debug("Entity %s not identified. Skipping it", segment)
                    continue
                parents.append(EntityRef(kind, segment_id))
        return parents

    async def get_icon(self, kind: EntityKind) -> Image.Image:
        """Icon of images, screens, plates or plate acquisitions.

        Raises:
            ValueError: If this API does not serve the icon of ``kind``
        """
        if kind not in ICON_URLS:
            raise ValueError(f"The webclient API does not serve the icon of {kind}")
        logger.debug("Getting OMERO %s icon", kind.value)
        return await self._request_sender.get_image(
            ICON_URLS[kind].format(self.web_server_uri)
        )

    def _check_annotatable(self, ref: EntityRef) -> None:
        if ref.kind not in ANNOTATABLE_KINDS:
            raise InvalidArgument(
                f"{ref} is not an image, dataset, project, screen, plate or plate acquisition"
            )

    async def get_annotations(self, ref: EntityRef) -> AnnotationGroup:
        """Every annotation of an entity.

        Raises:
            InvalidArgument: If the entity is a well
            DecodeError: If the response is not an annotation list
        """
        self._check_annotatable(ref)
        logger.debug("Getting annotations of %s", ref)
        response = await self._request_sender.get_json_object(
            ANNOTATIONS_URL.format(self.web_server_uri, ref.kind.uri_label, ref.id)
        )
        return AnnotationGroup.from_json(response)

    async def send_key_value_pairs(
        self,
        image_id: int,
        key_values: Mapping[str, str],
        replace_existing: bool = True,
        delete_existing: bool = False,
    ) -> None:
        """Replace the map annotations of an image by a single one.

        The existing map annotations are always removed first. Their pairs are
        merged into the new annotation unless ``delete_existing`` is set.

        Args:
            image_id: ID of the image
            key_values: Pairs to attach
            replace_existing: Whether a new value wins over an existing value
                of the same key
            delete_existing: Whether the existing pairs are dropped

        Raises:
            DecodeError: If the server did not acknowledge the new annotation
        """
        uri = KEY_VALUES_URL.format(self.web_server_uri)
        referer = WEBCLIENT_URL.format(self.web_server_uri)
        existing = (
            await self.get_annotations(EntityRef(EntityKind.IMAGE, image_id))
        ).of_type(MapAnnotation)

        for annotation in existing:
            logger.debug("Removing map annotation %d of image %d", annotation.id, image_id)
            await self._request_sender.post(
                uri,
                urlencode({"image": image_id, "annId": annotation.id, "mapAnnotation": '""'}),
                referer,
                self._token,
            )

        if delete_existing:
            pairs = dict(key_values)
        elif replace_existing:
            pairs = MapAnnotation.combine(existing)
            pairs.update(key_values)
        else:
            pairs = dict(key_values)
            pairs.update(MapAnnotation.combine(existing))

        logger.debug("Sending key-value pairs %s to image with ID %d", pairs, image_id)
        map_annotation = json.dumps([[key, value] for key, value in pairs.items()])
        response = await self._request_sender.post(
            uri,
            urlencode({"image": image_id, "mapAnnotation": map_annotation}),
            referer,
            self._token,
        )
        _check_acknowledged(response, "annId", f"Key-value pairs of image {image_id}")

    async def change_image_name(self, image_id: int, name: str) -> None:
        """Rename an image.

        Raises:
            DecodeError: If the server did not acknowledge the change
        """
        logger.debug("Changing name of image with ID %d to %s", image_id, name)
        response = await self._request_sender.post(
            IMAGE_NAME_URL.format(self.web_server_uri, image_id),
            urlencode({"name": name}),
            WEBCLIENT_URL.format(self.web_server_uri),
            self._token,
        )
        _check_acknowledged(response, "o_type", f"Name of image {image_id}")

    async def change_channel_names(self, image_id: int, channel_names: Sequence[str]) -> None:
        """Rename the channels of an image, in channel order.

        Raises:
            DecodeError: If the server did not acknowledge the change
        """
        logger.debug(
            "Changing channel names of image with ID %d to %s", image_id, channel_names
        )
        fields = [(f"channel{i}", name) for i, name in enumerate(channel_names)]
        fields.append(("save", "save"))
        response = await self._request_sender.post(
            CHANNEL_NAMES_URL.format(self.web_server_uri, image_id),
            urlencode(fields),
            WEBCLIENT_URL.format(self.web_server_uri),
            self._token,
        )
        _check_acknowledged(response, "channelNames", f"Channel names of image {image_id}")

    async def send_attachment(self, ref: EntityRef, file_name: str, content: str) -> None:
        """Attach a CSV file to an entity.

        Raises:
            InvalidArgument: If the entity is a well
            DecodeError: If the server did not return the ID of the new file
        """
        self._check_annotatable(ref)
        logger.debug("Sending attachment %s to %s", file_name, ref)
        response = await self._request_sender.post_file(
            SEND_ATTACHMENT_URL.format(self.web_server_uri),
            file_name,
            content,
            WEBCLIENT_URL.format(self.web_server_uri),
            self._token,
            {ref.kind.uri_label: str(ref.id), "index": ""},
        )
        data = _check_acknowledged(response, "fileIds", f"Attachment {file_name} of {ref}")
        if not data["fileIds"]:
            raise DecodeError(f"Attachment {file_name} of {ref} not created", response)

    async def delete_attachments(self, ref: EntityRef) -> None:
        """Delete every file attached to an entity.

        Raises:
            InvalidArgument: If the entity is a well
            DecodeError: If the server did not acknowledge one of the deletions
        """
        attachments = (await self.get_annotations(ref)).of_type(FileAnnotation)
        for attachment in attachments:
            logger.debug("Deleting attachment %d of %s", attachment.id, ref)
            response = await self._request_sender.post(
                DELETE_ATTACHMENT_URL.format(self.web_server_uri, attachment.id),
                "",
                WEBCLIENT_URL.format(self.web_server_uri),
                self._token,
            )
            _check_acknowledged(response, "bad", f"Deletion of attachment {attachment.id}")
