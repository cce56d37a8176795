"""Single entry point combining every API of one OMERO.web server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import httpx

from data.clients.omero import (
    IViewerApi,
    JsonApi,
    RequestSender,
    ThumbnailCache,
    WebclientApi,
    WebGatewayApi,
    create_entity_uri,
    parse_entity,
)
from models.omero import (
    AnnotationGroup,
    ChannelSettings,
    Credentials,
    Dataset,
    EntityKind,
    EntityRef,
    Experimenter,
    ExperimenterGroup,
    Image,
    ImageSettings,
    LoginResponse,
    Plate,
    PlateAcquisition,
    Project,
    Screen,
    ServerEntity,
    Shape,
    Well,
)
from utils import get_config
from utils.exceptions import InvalidArgument, ProtocolError

if TYPE_CHECKING:
    from PIL import Image as PILImage

logger = logging.getLogger(__name__)

ORPHANED_FOLDER = "orphaned_folder"


def _unique(ids: Sequence[int]) -> list[int]:
    return list(dict.fromkeys(ids))


class ApisHandler:
    """Session with one web server.

    Combines the JSON, webclient, webgateway and iviewer APIs. Create
    instances with ``await ApisHandler.create(...)`` and close them with
    ``await handler.close()``.
    """

    def __init__(
        self,
        web_server_uri: str,
        credentials: Credentials,
        request_sender: RequestSender,
        json_api: JsonApi,
        thumbnail_cache: ThumbnailCache | None = None,
    ):
        self.web_server_uri = web_server_uri
        self.credentials = credentials
        self._request_sender = request_sender
        self._json_api = json_api
        self._webclient_api = WebclientApi(web_server_uri, request_sender, json_api.token)
        self._webgateway_api = WebGatewayApi(
            web_server_uri, request_sender, json_api.token, thumbnail_cache
        )
        self._iviewer_api = IViewerApi(web_server_uri, request_sender, json_api.token)

        self._icons: dict[EntityKind | str, asyncio.Task] = {}
        self._memoised: dict[str, asyncio.Task] = {}

    @classmethod
    async def create(
        cls,
        web_server_uri: str,
        credentials: Credentials,
        thumbnail_cache: ThumbnailCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ApisHandler:
        """Connect to a web server.

        Args:
            web_server_uri: Base address of the server
            credentials: Credentials to log in with
            thumbnail_cache: Optional disk cache of thumbnails
            transport: Optional HTTP transport (tests use a mock transport)

        Raises:
            NetworkError, HttpError, DecodeError, ProtocolError: If the
                connection could not be established. The HTTP session is
                closed before the error propagates.
        """
        request_sender = RequestSender(transport=transport)
        try:
            json_api = await JsonApi.create(web_server_uri, request_sender, credentials)
        except BaseException:
            await request_sender.close()
            raise

        return cls(web_server_uri, credentials, request_sender, json_api, thumbnail_cache)

    def __repr__(self) -> str:
        return f"APIs handler of {self.web_server_uri}"

    # ------------------------------------------------------------------
    # Shared in-flight tasks
    # ------------------------------------------------------------------

    async def _shared(
        self, tasks: dict, key: Any, factory: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run ``factory`` once per key; a failed run is forgotten."""
        task = tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())

            def forget_on_failure(done: asyncio.Task) -> None:
                if (done.cancelled() or done.exception() is not None) and tasks.get(
                    key
                ) is done:
                    del tasks[key]

            task.add_done_callback(forget_on_failure)
            tasks[key] = task
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def json_api(self) -> JsonApi:
        return self._json_api

    @property
    def webgateway_api(self) -> WebGatewayApi:
        return self._webgateway_api

    @property
    def session(self) -> LoginResponse | None:
        return self._json_api.session

    @property
    def is_connected_as_regular_user(self) -> bool:
        return self._json_api.is_connected_as_regular_user

    @property
    def server_address(self) -> str:
        return self._json_api.server_address

    @property
    def server_port(self) -> int:
        return self._json_api.server_port

    @property
    def number_of_entities_loading(self) -> int:
        return self._json_api.number_of_entities_loading

    @property
    def number_of_thumbnails_loading(self) -> int:
        return self._webgateway_api.number_of_thumbnails_loading

    def add_loading_listener(self, listener: Callable[[int], None]) -> None:
        self._json_api.add_loading_listener(listener)

    def remove_loading_listener(self, listener: Callable[[int], None]) -> None:
        self._json_api.remove_loading_listener(listener)

    async def ping(self) -> None:
        await self._webclient_api.ping()

    async def re_login(self) -> LoginResponse:
        return await self._json_api.re_login()

    async def get_user_id(self) -> int:
        """ID of the connected user, or of the public user for anonymous sessions."""
        if self.session is not None:
            return self.session.user_id
        return await self._shared(
            self._memoised, "public_user_id", self._webclient_api.get_public_user_id
        )

    async def close(self) -> None:
        """Log out (regular users only) and close the HTTP session.

        Errors are logged, never raised.
        """
        if self.is_connected_as_regular_user and not self._request_sender.is_closed:
            try:
                await self._webclient_api.logout()
            except Exception:
                logger.warning("Logout from %s failed", self.web_server_uri, exc_info=True)
        await self._request_sender.close()

    # ------------------------------------------------------------------
    # URIs
    # ------------------------------------------------------------------

    def get_item_uri(self, ref: EntityRef) -> str:
        """Webclient address showing an entity."""
        return create_entity_uri(self.web_server_uri, ref)

    @staticmethod
    def parse_entity(uri: str) -> EntityRef | None:
        return parse_entity(uri)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def get_entity(self, ref: EntityRef) -> ServerEntity:
        return await self._json_api.get_entity(ref)

    async def get_projects(self, owner_id: int = -1, group_id: int = -1) -> list[Project]:
        return await self._json_api.get_projects(owner_id, group_id)

    async def get_project(self, project_id: int) -> Project:
        return await self._json_api.get_project(project_id)

    async def get_orphaned_datasets(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Dataset]:
        return await self._json_api.get_orphaned_datasets(owner_id, group_id)

    async def get_datasets(
        self, project_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Dataset]:
        return await self._json_api.get_datasets(project_id, owner_id, group_id)

    async def get_dataset(self, dataset_id: int) -> Dataset:
        return await self._json_api.get_dataset(dataset_id)

    async def get_images(
        self, dataset_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Image]:
        return await self._json_api.get_images(dataset_id, owner_id, group_id)

    async def get_orphaned_images(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Image]:
        return await self._json_api.get_orphaned_images(owner_id, group_id)

    async def get_orphaned_image_ids(self) -> list[int]:
        """IDs of every orphaned image (computed once per session)."""

        async def load() -> list[int]:
            return [image.id for image in await self._json_api.get_orphaned_images()]

        return await self._shared(self._memoised, "orphaned_image_ids", load)

    async def get_image(self, image_id: int) -> Image:
        return await self._json_api.get_image(image_id)

    async def get_screens(self, owner_id: int = -1, group_id: int = -1) -> list[Screen]:
        return await self._json_api.get_screens(owner_id, group_id)

    async def get_screen(self, screen_id: int) -> Screen:
        return await self._json_api.get_screen(screen_id)

    async def get_orphaned_plates(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Plate]:
        return await self._json_api.get_orphaned_plates(owner_id, group_id)

    async def get_plates(
        self, screen_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Plate]:
        return await self._json_api.get_plates(screen_id, owner_id, group_id)

    async def get_plate(self, plate_id: int) -> Plate:
        return await self._json_api.get_plate(plate_id)

    async def get_plate_acquisitions(
        self,
        plate_id: int,
        number_of_wells: int = 0,
        owner_id: int = -1,
        group_id: int = -1,
    ) -> list[PlateAcquisition]:
        return await self._json_api.get_plate_acquisitions(
            plate_id, number_of_wells, owner_id, group_id
        )

    async def get_plate_acquisition(
        self, plate_acquisition_id: int, number_of_wells: int = 0
    ) -> PlateAcquisition:
        return await self._json_api.get_plate_acquisition(
            plate_acquisition_id, number_of_wells
        )

    async def get_wells_from_plate(
        self, plate_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Well]:
        return await self._json_api.get_wells_from_plate(plate_id, owner_id, group_id)

    async def get_wells_from_plate_acquisition(
        self,
        plate_acquisition_id: int,
        well_sample_index: int,
        owner_id: int = -1,
        group_id: int = -1,
    ) -> list[Well]:
        return await self._json_api.get_wells_from_plate_acquisition(
            plate_acquisition_id, well_sample_index, owner_id, group_id
        )

    async def get_well(self, well_id: int, plate_acquisition_owner_id: int = -1) -> Well:
        return await self._json_api.get_well(well_id, plate_acquisition_owner_id)

    async def get_owners(self) -> list[Experimenter]:
        return await self._json_api.get_owners()

    async def get_groups(self, user_id: int = -1) -> list[ExperimenterGroup]:
        return await self._json_api.get_groups(user_id)

    async def get_parents_of_image(self, image_id: int) -> list[ServerEntity]:
        """Every container of an image, resolved to full entities."""
        refs = await self._webclient_api.get_parents_of_image(image_id)
        return list(await asyncio.gather(*(self._json_api.get_entity(ref) for ref in refs)))

    # ------------------------------------------------------------------
    # Image URIs under an entity
    # ------------------------------------------------------------------

    def _image_uris(self, image_ids: Sequence[int]) -> list[str]:
        return [
            self.get_item_uri(EntityRef(EntityKind.IMAGE, image_id))
            for image_id in _unique(image_ids)
        ]

    async def get_images_uri_of_entity(self, uri: str) -> list[str]:
        """Addresses of every image contained in the entity shown at ``uri``.

        Raises:
            InvalidArgument: If ``uri`` does not point to an entity
            ProtocolError: If a plate acquisition has no well sample index range
        """
        ref = parse_entity(uri)
        if ref is None:
            raise InvalidArgument(f"The provided URI {uri} was not recognized")

        logger.debug("Getting images of %s", ref)
        match ref.kind:
            case EntityKind.IMAGE:
                return [self.get_item_uri(ref)]
            case EntityKind.DATASET:
                return await self.get_images_uri_of_dataset(ref.id)
            case EntityKind.PROJECT:
                return await self.get_images_uri_of_project(ref.id)
            case EntityKind.SCREEN:
                return await self.get_images_uri_of_screen(ref.id)
            case EntityKind.PLATE:
                return await self.get_images_uri_of_plate(ref.id)
            case EntityKind.PLATE_ACQUISITION:
                return await self.get_images_uri_of_plate_acquisition(ref.id)
            case EntityKind.WELL:
                return await self.get_images_uri_of_well(ref.id)

    async def get_images_uri_of_dataset(self, dataset_id: int) -> list[str]:
        images = await self._json_api.get_images(dataset_id)
        return self._image_uris([image.id for image in images])

    async def get_images_uri_of_project(self, project_id: int) -> list[str]:
        datasets = await self._json_api.get_datasets(project_id)
        uris = await asyncio.gather(
            *(self.get_images_uri_of_dataset(dataset.id) for dataset in datasets)
        )
        return list(dict.fromkeys(uri for dataset_uris in uris for uri in dataset_uris))

    async def get_images_uri_of_screen(self, screen_id: int) -> list[str]:
        plates = await self._json_api.get_plates(screen_id)
        uris = await asyncio.gather(
            *(self.get_images_uri_of_plate(plate.id) for plate in plates)
        )
        return list(dict.fromkeys(uri for plate_uris in uris for uri in plate_uris))

    async def get_images_uri_of_plate(self, plate_id: int) -> list[str]:
        wells = await self._json_api.get_wells_from_plate(plate_id)
        return self._image_uris(
            [image_id for well in wells for image_id in well.image_ids()]
        )

    async def get_images_uri_of_plate_acquisition(self, plate_acquisition_id: int) -> list[str]:
        plate_acquisition = await self._json_api.get_plate_acquisition(plate_acquisition_id)
        min_index = plate_acquisition.min_well_sample_index
        max_index = plate_acquisition.max_well_sample_index
        if min_index is None or max_index is None:
            raise ProtocolError(
                f"The min and max well sample indices of {plate_acquisition} are not defined"
            )

        wells_per_index = await asyncio.gather(
            *(
                self._json_api.get_wells_from_plate_acquisition(plate_acquisition_id, index)
                for index in range(min_index, max_index + 1)
            )
        )
        return self._image_uris(
            [
                image_id
                for wells in wells_per_index
                for well in wells
                for image_id in well.image_ids(plate_acquisition_id)
            ]
        )

    async def get_images_uri_of_well(
        self, well_id: int, plate_acquisition_owner_id: int = -1
    ) -> list[str]:
        well = await self._json_api.get_well(well_id, plate_acquisition_owner_id)
        return self._image_uris(well.image_ids(plate_acquisition_owner_id))

    # ------------------------------------------------------------------
    # Icons and thumbnails
    # ------------------------------------------------------------------

    async def get_icon(self, kind: EntityKind) -> PILImage.Image:
        """Icon of an entity kind, fetched once per session."""

        def fetch() -> Awaitable[PILImage.Image]:
            match kind:
                case EntityKind.PROJECT | EntityKind.DATASET | EntityKind.WELL:
                    return self._webgateway_api.get_icon(kind)
                case (
                    EntityKind.IMAGE
                    | EntityKind.SCREEN
                    | EntityKind.PLATE
                    | EntityKind.PLATE_ACQUISITION
                ):
                    return self._webclient_api.get_icon(kind)

        return await self._shared(self._icons, kind, fetch)

    async def get_orphaned_folder_icon(self) -> PILImage.Image:
        return await self._shared(
            self._icons, ORPHANED_FOLDER, self._webgateway_api.get_orphaned_folder_icon
        )

    async def get_thumbnail(self, image_id: int, size: int | None = None) -> PILImage.Image:
        return await self._webgateway_api.get_thumbnail(
            image_id, size or get_config().omero.thumbnail_size
        )

    async def get_image_metadata(self, image_id: int) -> dict:
        return await self._webgateway_api.get_image_metadata(image_id)

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
    ) -> PILImage.Image:
        return await self._webgateway_api.read_tile(
            image_id, z, t, level, tile_x, tile_y, tile_width, tile_height, quality
        )

    # ------------------------------------------------------------------
    # Rendering settings and shapes
    # ------------------------------------------------------------------

    async def get_image_settings(self, image_id: int) -> ImageSettings:
        return await self._iviewer_api.get_image_settings(image_id)

    async def _check_channel_count(self, image_id: int, count: int) -> ImageSettings:
        settings = await self._iviewer_api.get_image_settings(image_id)
        if len(settings.channels) != count:
            raise InvalidArgument(
                f"The provided number of channels ({count}) does not match "
                f"the number of channels of image {image_id} ({len(settings.channels)})"
            )
        return settings

    async def change_channel_colors(self, image_id: int, colors: Sequence[int]) -> None:
        """Replace the packed RGB color of every channel, keeping display ranges.

        Raises:
            InvalidArgument: If ``colors`` does not have one entry per channel
        """
        settings = await self._check_channel_count(image_id, len(colors))
        await self._webgateway_api.change_channel_display_ranges_and_colors(
            image_id,
            [
                channel.model_copy(update={"rgb_color": color})
                for channel, color in zip(settings.channels, colors, strict=True)
            ],
        )

    async def change_channel_display_ranges(
        self, image_id: int, channel_settings: Sequence[ChannelSettings]
    ) -> None:
        """Replace the display range of every channel, keeping colors.

        Raises:
            InvalidArgument: If ``channel_settings`` does not have one entry per channel
        """
        settings = await self._check_channel_count(image_id, len(channel_settings))
        await self._webgateway_api.change_channel_display_ranges_and_colors(
            image_id,
            [
                channel.model_copy(
                    update={
                        "min_display_range": new.min_display_range,
                        "max_display_range": new.max_display_range,
                    }
                )
                for channel, new in zip(settings.channels, channel_settings, strict=True)
            ],
        )

    async def get_shapes(self, image_id: int, user_id: int = -1) -> list[Shape]:
        return await self._json_api.get_shapes(image_id, user_id)

    async def write_shapes(
        self, image_id: int, shapes: Sequence[Shape], remove_existing: bool
    ) -> None:
        """Add shapes to an image, optionally deleting its existing ones first."""
        if remove_existing:
            existing = await self._json_api.get_shapes(image_id)
            await self._iviewer_api.delete_shapes(image_id, existing)
        await self._iviewer_api.add_shapes(image_id, shapes)

    # ------------------------------------------------------------------
    # Annotations and metadata editing
    # ------------------------------------------------------------------

    async def get_annotations(self, ref: EntityRef) -> AnnotationGroup:
        return await self._webclient_api.get_annotations(ref)

    async def send_key_value_pairs(
        self,
        image_id: int,
        key_values: Mapping[str, str],
        replace_existing: bool = True,
        delete_existing: bool = False,
    ) -> None:
        await self._webclient_api.send_key_value_pairs(
            image_id, key_values, replace_existing, delete_existing
        )

    async def change_image_name(self, image_id: int, name: str) -> None:
        await self._webclient_api.change_image_name(image_id, name)

    async def change_channel_names(self, image_id: int, channel_names: Sequence[str]) -> None:
        """Rename every channel of an image.

        Raises:
            InvalidArgument: If ``channel_names`` does not have one entry per channel
        """
        await self._check_channel_count(image_id, len(channel_names))
        await self._webclient_api.change_channel_names(image_id, channel_names)

    async def send_attachment(self, ref: EntityRef, file_name: str, content: str) -> None:
        await self._webclient_api.send_attachment(ref, file_name, content)

    async def delete_attachments(self, ref: EntityRef) -> None:
        await self._webclient_api.delete_attachments(ref)
