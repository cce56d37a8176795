"""Client of the OMERO JSON API.

Handles authentication, discovery of the versioned endpoint URLs and cached
access to the entity hierarchy.

Every list query goes through two caches per entity kind:

- an id-list cache mapping a ``ChildrenKey`` (parent, owner filter, group
  filter, context) to the ordered list of child IDs returned by the server;
- an entity cache mapping ``(id, context)`` to the entity itself, shared by
  every id list referencing it.

``context`` is the extra parameter some queries need: the number of wells of
the parent plate for plate acquisitions, the owning plate acquisition (or
well sample index for lists) for wells. It is part of both cache keys so two
contexts never overwrite each other.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from typing import Any, NamedTuple
from urllib.parse import quote

from pydantic import ValidationError

from models.omero import (
    ENTITY_CLASSES,
    Credentials,
    Dataset,
    EntityKind,
    EntityRef,
    Experimenter,
    ExperimenterGroup,
    Image,
    Links,
    LoginResponse,
    Plate,
    PlateAcquisition,
    Project,
    Screen,
    ServerEntity,
    ServerInfo,
    Shape,
    SupportedVersion,
    Well,
)
from utils import get_config
from utils.exceptions import DecodeError, ProtocolError
from utils.lru_cache import LoadingCache

from .request_sender import RequestSender

logger = logging.getLogger(__name__)

API_URL = "{}/api/"
EXCLUDED_GROUP_NAMES = frozenset({"system", "user"})
OMERO_TYPE_PREFIX = "http://www.openmicroscopy.org/Schemas/OME/2016-06#"

# Bytes left as is when url-encoding the password (same set as urllib.parse.quote_plus)
_URL_SAFE_BYTES = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_.-~"
)


class ChildrenKey(NamedTuple):
    """Key of an id-list cache entry."""

    parent: EntityRef | None
    owner_id: int = -1
    group_id: int = -1
    context: int | None = None


def create_url_from_parameters(
    base_url: str,
    child_count: bool = False,
    orphaned: bool = False,
    owner_id: int = -1,
    group_id: int = -1,
) -> str:
    """Append the list query filters to a JSON API URL.

    Args:
        base_url: URL without query
        child_count: Ask the server for the number of children of each entity
        orphaned: Only return entities without parent
        owner_id: Only return entities of this experimenter (ignored if negative)
        group_id: Only return entities of this group (ignored if negative)
    """
    parameters = []
    if child_count:
        parameters.append("childCount=true")
    if orphaned:
        parameters.append("orphaned=true")
    if owner_id > -1:
        parameters.append(f"owner={owner_id}")
    if group_id > -1:
        parameters.append(f"group={group_id}")

    if not parameters:
        return base_url
    return f"{base_url}?{'&'.join(parameters)}"


def _url_encode_into(buffer: bytearray) -> bytearray:
    """Percent-encode a byte buffer without going through an immutable string."""
    encoded = bytearray()
    for byte in buffer:
        if byte in _URL_SAFE_BYTES:
            encoded.append(byte)
        elif byte == 0x20:
            encoded.append(ord("+"))
        else:
            encoded.extend(f"%{byte:02X}".encode("ascii"))
    return encoded


def _wipe(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


def _decode_entity(kind: EntityKind, raw: Any) -> ServerEntity:
    entity_class = ENTITY_CLASSES[kind]
    if isinstance(raw, dict):
        omero_type = raw.get("@type")
        if omero_type is not None and omero_type != OMERO_TYPE_PREFIX + kind.value:
            logger.warning(
                "The provided type %s does not correspond to the expected type %s",
                omero_type,
                OMERO_TYPE_PREFIX + kind.value,
            )
    try:
        return entity_class.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"Cannot convert to {kind.value}: {e}", raw) from e


class JsonApi:
    """Authenticated access to the JSON API of one web server.

    Instances are created with ``await JsonApi.create(...)``, which runs the
    startup protocol; the constructor only stores its results.
    """

    def __init__(
        self,
        web_server_uri: str,
        request_sender: RequestSender,
        api_url: str,
        links: Links,
        token: str,
        server_info: ServerInfo,
        login_response: LoginResponse | None = None,
        entity_ids_cache_size: int | None = None,
        entities_cache_size: int | None = None,
    ):
        config = get_config()
        self.web_server_uri = web_server_uri
        self._request_sender = request_sender
        self.api_url = api_url.rstrip("/")
        self.links = links
        self.token = token
        self.server_info = server_info
        self._login_response = login_response

        ids_size = entity_ids_cache_size or config.omero.entity_ids_cache_size
        entities_size = entities_cache_size or config.omero.entities_cache_size
        self._id_caches: dict[EntityKind, LoadingCache[ChildrenKey, list[int]]] = {
            kind: LoadingCache(ids_size) for kind in EntityKind
        }
        self._entity_caches: dict[
            EntityKind, LoadingCache[tuple[int, int | None], ServerEntity]
        ] = {kind: LoadingCache(entities_size) for kind in EntityKind}

        self._loading_lock = threading.Lock()
        self._entities_loading = 0
        self._loading_listeners: list[Callable[[int], None]] = []

    def __repr__(self) -> str:
        return f"JSON API of {self.web_server_uri}"

    # ------------------------------------------------------------------
    # Startup protocol
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        web_server_uri: str,
        request_sender: RequestSender,
        credentials: Credentials,
        expected_api_version: str | None = None,
    ) -> JsonApi:
        """Connect to the JSON API of a web server.

        Args:
            web_server_uri: Base address of the web server
            request_sender: Sender holding the session cookies
            credentials: Public or regular user credentials. The password
                buffer is wiped once the login request has been built.
            expected_api_version: Version to select. Falls back to config.

        Returns:
            The connected API

        Raises:
            ProtocolError: If the server misses a required capability or field
            NetworkError: If the server could not be reached
            HttpError: If a startup request failed
        """
        expected = expected_api_version or get_config().omero.expected_api_version
        api_url = await cls._select_api_version(web_server_uri, request_sender, expected)

        try:
            links = await request_sender.get_and_convert(api_url, Links)
        except DecodeError as e:
            raise ProtocolError(f"Links not found in {api_url}: {e}") from e

        token, server_info = await asyncio.gather(
            cls._get_token(request_sender, links.token),
            cls._get_server_info(request_sender, links.servers),
        )

        login_response = None
        if not credentials.is_public:
            login_response = await cls._login(
                request_sender,
                links.login,
                token,
                server_info.id,
                credentials.username or "",
                credentials.password,
            )

        return cls(
            web_server_uri,
            request_sender,
            api_url,
            links,
            token,
            server_info,
            login_response,
        )

    @staticmethod
    async def _select_api_version(
        web_server_uri: str, request_sender: RequestSender, expected_version: str
    ) -> str:
        uri = API_URL.format(web_server_uri)
        response = await request_sender.get_json_object(uri)
        data = response.get("data")
        if not isinstance(data, list):
            raise ProtocolError(f"Supported versions not found in {response}")

        versions = []
        for element in data:
            try:
                versions.append(SupportedVersion.model_validate(element))
            except ValidationError:
                logger.debug("Skipping invalid supported version %s", element)
        valid_versions = [version for version in versions if version.is_valid]

        for version in valid_versions:
            if version.version == expected_version:
                return version.url or ""

        if not valid_versions:
            raise ProtocolError(f"No usable API version found in {response}")

        fallback = valid_versions[0]
        logger.warning(
            "API version %s not found in %s. Using version %s instead",
            expected_version,
            [version.version for version in versions],
            fallback.version,
        )
        return fallback.url or ""

    @staticmethod
    async def _get_token(request_sender: RequestSender, token_url: str) -> str:
        response = await request_sender.get_json_object(token_url)
        token = response.get("data")
        if not isinstance(token, str):
            raise ProtocolError(f"'data' token not found in {response}")
        return token

    @staticmethod
    async def _get_server_info(request_sender: RequestSender, servers_url: str) -> ServerInfo:
        response = await request_sender.get_json_object(servers_url)
        servers = response.get("data")
        if not isinstance(servers, list) or not servers:
            raise ProtocolError(f"Server list not found or empty in {response}")
        if len(servers) > 1:
            logger.warning(
                "Several OMERO servers were found in %s. Using the first one", servers
            )
        try:
            return ServerInfo.model_validate(servers[0])
        except ValidationError as e:
            raise ProtocolError(f"Invalid server information {servers[0]}: {e}") from e

    @staticmethod
    async def _login(
        request_sender: RequestSender,
        login_url: str,
        token: str,
        server_id: int,
        username: str,
        password: bytearray,
    ) -> LoginResponse:
        body = bytearray(
            f"server={server_id}&username={quote(username, safe='')}&password=".encode()
        )
        encoded_password = _url_encode_into(password)
        body.extend(encoded_password)
        _wipe(encoded_password)
        _wipe(password)

        try:
            response = await request_sender.post(login_url, body, login_url, token)
        finally:
            _wipe(body)

        try:
            raw = json.loads(response)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Login response is not valid JSON: {response}") from e
        return LoginResponse.from_json(raw)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def session(self) -> LoginResponse | None:
        """The authenticated session, or None for the public user."""
        return self._login_response

    @property
    def is_connected_as_regular_user(self) -> bool:
        return self._login_response is not None

    @property
    def server_id(self) -> int:
        return self.server_info.id

    @property
    def server_address(self) -> str:
        return self.server_info.host

    @property
    def server_port(self) -> int:
        return self.server_info.port

    async def re_login(self) -> LoginResponse:
        """Renew the session using its ID as username and password.

        Raises:
            ProtocolError: If no login happened before, or the response is invalid
        """
        if self._login_response is None:
            raise ProtocolError(
                f"Cannot log in again to {self.web_server_uri}: no previous login"
            )

        logger.debug("Logging in again to %s", self.web_server_uri)
        session_uuid = self._login_response.session_uuid
        self._login_response = await self._login(
            self._request_sender,
            self.links.login,
            self.token,
            self.server_info.id,
            session_uuid,
            bytearray(session_uuid.encode("utf-8")),
        )
        return self._login_response

    # ------------------------------------------------------------------
    # Loading counter
    # ------------------------------------------------------------------

    @property
    def number_of_entities_loading(self) -> int:
        with self._loading_lock:
            return self._entities_loading

    def add_loading_listener(self, listener: Callable[[int], None]) -> None:
        """Call ``listener`` with the new value whenever the loading counter changes."""
        with self._loading_lock:
            self._loading_listeners.append(listener)

    def remove_loading_listener(self, listener: Callable[[int], None]) -> None:
        with self._loading_lock:
            if listener in self._loading_listeners:
                self._loading_listeners.remove(listener)

    def _change_loading(self, delta: int) -> None:
        with self._loading_lock:
            self._entities_loading += delta
            value = self._entities_loading
            listeners = list(self._loading_listeners)
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("Entities loading listener failed")

    # ------------------------------------------------------------------
    # Cached queries
    # ------------------------------------------------------------------

    async def _get_children(
        self,
        kind: EntityKind,
        key: ChildrenKey,
        url: str,
        with_context: Callable[[ServerEntity], ServerEntity] | None = None,
    ) -> list[ServerEntity]:
        async def load_ids() -> list[int]:
            logger.debug("Fetching %s list %s (not already in cache)", kind.value, url)
            self._change_loading(1)
            try:
                elements = await self._request_sender.get_paginated(url)
                entities = [_decode_entity(kind, element) for element in elements]
            finally:
                self._change_loading(-1)

            if with_context is not None:
                entities = [with_context(entity) for entity in entities]
            self._entity_caches[kind].put_all(
                {(entity.id, key.context): entity for entity in entities}
            )
            return [entity.id for entity in entities]

        ids = await self._id_caches[kind].get_or_load(key, load_ids)
        return list(
            await asyncio.gather(
                *(self._get_entity(kind, entity_id, key.context) for entity_id in ids)
            )
        )

    def _entity_url(self, kind: EntityKind, entity_id: int) -> str:
        match kind:
            case EntityKind.PROJECT:
                return f"{self.links.projects}{entity_id}/"
            case EntityKind.DATASET:
                return f"{self.links.datasets}{entity_id}/"
            case EntityKind.IMAGE:
                return f"{self.links.images}{entity_id}/"
            case EntityKind.SCREEN:
                return f"{self.links.screens}{entity_id}/"
            case EntityKind.PLATE:
                return f"{self.links.plates}{entity_id}/"
            case EntityKind.PLATE_ACQUISITION:
                return f"{self.api_url}/m/plateacquisitions/{entity_id}/"
            case EntityKind.WELL:
                return f"{self.api_url}/m/wells/{entity_id}/"

    @staticmethod
    def _apply_context(entity: ServerEntity, context: int | None) -> ServerEntity:
        match entity:
            case Well() if context is not None:
                return entity.model_copy(update={"plate_acquisition_owner_id": context})
            case PlateAcquisition() if context is not None:
                return entity.model_copy(update={"number_of_wells": context})
            case _:
                return entity

    async def _get_entity(
        self, kind: EntityKind, entity_id: int, context: int | None = None
    ) -> ServerEntity:
        async def load_entity() -> ServerEntity:
            url = self._entity_url(kind, entity_id)
            logger.debug("Fetching %s %d (not already in cache)", kind.value, entity_id)
            self._change_loading(1)
            try:
                response = await self._request_sender.get_json_object(url)
                if "data" not in response:
                    raise DecodeError(f"'data' not found in response of {url}", response)
                entity = _decode_entity(kind, response["data"])
            finally:
                self._change_loading(-1)
            return self._apply_context(entity, context)

        return await self._entity_caches[kind].get_or_load((entity_id, context), load_entity)

    async def get_entity(self, ref: EntityRef) -> ServerEntity:
        """Get any entity by kind and ID (cached)."""
        match ref.kind:
            case EntityKind.WELL:
                return await self._get_entity(ref.kind, ref.id, -1)
            case EntityKind.PLATE_ACQUISITION:
                return await self._get_entity(ref.kind, ref.id, 0)
            case _:
                return await self._get_entity(ref.kind, ref.id)

    async def get_projects(self, owner_id: int = -1, group_id: int = -1) -> list[Project]:
        """Projects visible to the session, optionally filtered by owner and group."""
        return await self._get_children(
            EntityKind.PROJECT,
            ChildrenKey(None, owner_id, group_id),
            create_url_from_parameters(
                self.links.projects, child_count=True, owner_id=owner_id, group_id=group_id
            ),
        )

    async def get_project(self, project_id: int) -> Project:
        return await self._get_entity(EntityKind.PROJECT, project_id)

    async def get_orphaned_datasets(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Dataset]:
        return await self._get_children(
            EntityKind.DATASET,
            ChildrenKey(None, owner_id, group_id),
            create_url_from_parameters(
                self.links.datasets,
                child_count=True,
                orphaned=True,
                owner_id=owner_id,
                group_id=group_id,
            ),
        )

    async def get_datasets(
        self, project_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Dataset]:
        """Datasets of a project."""
        return await self._get_children(
            EntityKind.DATASET,
            ChildrenKey(EntityRef(EntityKind.PROJECT, project_id), owner_id, group_id),
            create_url_from_parameters(
                f"{self.links.projects}{project_id}/datasets/",
                child_count=True,
                owner_id=owner_id,
                group_id=group_id,
            ),
        )

    async def get_dataset(self, dataset_id: int) -> Dataset:
        return await self._get_entity(EntityKind.DATASET, dataset_id)

    async def get_images(
        self, dataset_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Image]:
        """Images of a dataset."""
        return await self._get_children(
            EntityKind.IMAGE,
            ChildrenKey(EntityRef(EntityKind.DATASET, dataset_id), owner_id, group_id),
            create_url_from_parameters(
                f"{self.links.datasets}{dataset_id}/images/",
                owner_id=owner_id,
                group_id=group_id,
            ),
        )

    async def get_orphaned_images(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Image]:
        return await self._get_children(
            EntityKind.IMAGE,
            ChildrenKey(None, owner_id, group_id),
            create_url_from_parameters(
                self.links.images, orphaned=True, owner_id=owner_id, group_id=group_id
            ),
        )

    async def get_image(self, image_id: int) -> Image:
        return await self._get_entity(EntityKind.IMAGE, image_id)

    async def get_screens(self, owner_id: int = -1, group_id: int = -1) -> list[Screen]:
        return await self._get_children(
            EntityKind.SCREEN,
            ChildrenKey(None, owner_id, group_id),
            create_url_from_parameters(
                self.links.screens, child_count=True, owner_id=owner_id, group_id=group_id
            ),
        )

    async def get_screen(self, screen_id: int) -> Screen:
        return await self._get_entity(EntityKind.SCREEN, screen_id)

    async def get_orphaned_plates(
        self, owner_id: int = -1, group_id: int = -1
    ) -> list[Plate]:
        return await self._get_children(
            EntityKind.PLATE,
            ChildrenKey(None, owner_id, group_id),
            create_url_from_parameters(
                self.links.plates,
                child_count=True,
                orphaned=True,
                owner_id=owner_id,
                group_id=group_id,
            ),
        )

    async def get_plates(
        self, screen_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Plate]:
        """Plates of a screen."""
        return await self._get_children(
            EntityKind.PLATE,
            ChildrenKey(EntityRef(EntityKind.SCREEN, screen_id), owner_id, group_id),
            create_url_from_parameters(
                f"{self.links.screens}{screen_id}/plates/",
                child_count=True,
                owner_id=owner_id,
                group_id=group_id,
            ),
        )

    async def get_plate(self, plate_id: int) -> Plate:
        return await self._get_entity(EntityKind.PLATE, plate_id)

    async def get_plate_acquisitions(
        self,
        plate_id: int,
        number_of_wells: int = 0,
        owner_id: int = -1,
        group_id: int = -1,
    ) -> list[PlateAcquisition]:
        """Plate acquisitions of a plate.

        Args:
            plate_id: ID of the parent plate
            number_of_wells: Number of wells of the parent plate, stored on
                each returned plate acquisition
            owner_id: Owner filter (ignored if negative)
            group_id: Group filter (ignored if negative)
        """
        return await self._get_children(
            EntityKind.PLATE_ACQUISITION,
            ChildrenKey(
                EntityRef(EntityKind.PLATE, plate_id), owner_id, group_id, number_of_wells
            ),
            create_url_from_parameters(
                f"{self.api_url}/m/plates/{plate_id}/plateacquisitions/",
                owner_id=owner_id,
                group_id=group_id,
            ),
            lambda entity: self._apply_context(entity, number_of_wells),
        )

    async def get_plate_acquisition(
        self, plate_acquisition_id: int, number_of_wells: int = 0
    ) -> PlateAcquisition:
        return await self._get_entity(
            EntityKind.PLATE_ACQUISITION, plate_acquisition_id, number_of_wells
        )

    async def get_wells_from_plate(
        self, plate_id: int, owner_id: int = -1, group_id: int = -1
    ) -> list[Well]:
        """Wells of a plate, not tied to any plate acquisition."""
        return await self._get_children(
            EntityKind.WELL,
            ChildrenKey(EntityRef(EntityKind.PLATE, plate_id), owner_id, group_id, -1),
            create_url_from_parameters(
                f"{self.api_url}/m/plates/{plate_id}/wells/",
                owner_id=owner_id,
                group_id=group_id,
            ),
            lambda entity: self._apply_context(entity, -1),
        )

    async def get_wells_from_plate_acquisition(
        self,
        plate_acquisition_id: int,
        well_sample_index: int,
        owner_id: int = -1,
        group_id: int = -1,
    ) -> list[Well]:
        """Wells of a plate acquisition at one well sample index.

        The returned wells are tied to the plate acquisition: their images
        are restricted to it.
        """
        key = ChildrenKey(
            EntityRef(EntityKind.PLATE_ACQUISITION, plate_acquisition_id),
            owner_id,
            group_id,
            well_sample_index,
        )
        url = create_url_from_parameters(
            f"{self.api_url}/m/plateacquisitions/{plate_acquisition_id}"
            f"/wellsampleindex/{well_sample_index}/wells/",
            owner_id=owner_id,
            group_id=group_id,
        )

        async def load_ids() -> list[int]:
            logger.debug("Fetching Well list %s (not already in cache)", url)
            self._change_loading(1)
            try:
                elements = await self._request_sender.get_paginated(url)
                wells = [
                    self._apply_context(
                        _decode_entity(EntityKind.WELL, element), plate_acquisition_id
                    )
                    for element in elements
                ]
            finally:
                self._change_loading(-1)
            self._entity_caches[EntityKind.WELL].put_all(
                {(well.id, plate_acquisition_id): well for well in wells}
            )
            return [well.id for well in wells]

        ids = await self._id_caches[EntityKind.WELL].get_or_load(key, load_ids)
        return list(
            await asyncio.gather(
                *(
                    self._get_entity(EntityKind.WELL, well_id, plate_acquisition_id)
                    for well_id in ids
                )
            )
        )

    async def get_well(self, well_id: int, plate_acquisition_owner_id: int = -1) -> Well:
        return await self._get_entity(EntityKind.WELL, well_id, plate_acquisition_owner_id)

    # ------------------------------------------------------------------
    # Experimenters and groups
    # ------------------------------------------------------------------

    async def get_owners(self) -> list[Experimenter]:
        """Every experimenter of the server."""
        elements = await self._request_sender.get_paginated(self.links.experimenters)
        try:
            return [Experimenter.model_validate(element) for element in elements]
        except ValidationError as e:
            raise DecodeError(f"Cannot convert experimenters: {e}", elements) from e

    async def get_groups(self, user_id: int = -1) -> list[ExperimenterGroup]:
        """Groups of the server, or of one experimenter.

        The internal ``system`` and ``user`` groups are never returned.
        """
        url = (
            f"{self.links.experimenters}{user_id}/experimentergroups/"
            if user_id > -1
            else self.links.groups
        )
        elements = await self._request_sender.get_paginated(url)
        try:
            groups = [ExperimenterGroup.model_validate(element) for element in elements]
        except ValidationError as e:
            raise DecodeError(f"Cannot convert groups: {e}", elements) from e
        return [group for group in groups if group.name not in EXCLUDED_GROUP_NAMES]

    # ------------------------------------------------------------------
    # Shapes
    # ------------------------------------------------------------------

    async def get_shapes(self, image_id: int, user_id: int = -1) -> list[Shape]:
        """Shapes of every ROI of an image.

        Args:
            image_id: ID of the image
            user_id: Only return ROIs of this experimenter (ignored if not positive)

        Raises:
            DecodeError: If a ROI misses its numeric ``@id`` or ``shapes`` array
        """
        url = f"{self.api_url}/m/rois/?image={image_id}"
        if user_id > 0:
            url = f"{url}&owner={user_id}"

        rois = await self._request_sender.get_paginated(url)
        shapes = []
        for roi in rois:
            if not isinstance(roi, dict):
                raise DecodeError("ROI is not an object", roi)
            roi_id = roi.get("@id")
            if not isinstance(roi_id, int | float) or isinstance(roi_id, bool):
                raise DecodeError("'@id' number not found in ROI", roi)
            if not isinstance(roi.get("shapes"), list):
                raise DecodeError("'shapes' array not found in ROI", roi)

            for shape in roi["shapes"]:
                if not isinstance(shape, dict):
                    raise DecodeError("Shape is not an object", shape)
                try:
                    shapes.append(Shape.model_validate({**shape, "roi_id": int(roi_id)}))
                except ValidationError as e:
                    raise DecodeError(f"Cannot convert shape: {e}", shape) from e
        return shapes
