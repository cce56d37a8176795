"""Connection to one OMERO.web server."""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable, Sequence

import httpx

from data.clients.omero import ThumbnailCache, get_server_uri
from models.omero import Credentials
from utils.exceptions import InvalidArgument

from .apis_handler import ApisHandler
from .pixel_backends import PixelBackend, WebPixelBackend
from .ping_monitor import PingMonitor

logger = logging.getLogger(__name__)

FailureCallback = Callable[["Client", Exception | None], object]
PixelBackendFactory = Callable[[ApisHandler], Sequence[PixelBackend]]


class Client:
    """An open session with one server, its pixel backends and keep-alive loop.

    Use ``await Client.create(...)`` (or a ``ClientRegistry``) to connect and
    ``await client.close()`` to disconnect.
    """

    def __init__(
        self,
        apis_handler: ApisHandler,
        pixel_backends: Sequence[PixelBackend],
        on_failure: FailureCallback | None = None,
        can_be_closed: Callable[[Client], bool] | None = None,
        ping_monitor: PingMonitor | None = None,
    ):
        self.apis_handler = apis_handler
        self.pixel_backends: tuple[PixelBackend, ...] = tuple(pixel_backends)
        self._on_failure = on_failure
        self._can_be_closed = can_be_closed
        self._on_closed: list[Callable[[Client], None]] = []

        self._lock = threading.Lock()
        self._selected_pixel_backend: PixelBackend | None = None
        self._opened_image_uris: set[str] = set()
        self._closed = False

        for backend in self.pixel_backends:
            backend.add_availability_listener(self._on_availability_changed)
        self._select_pixel_backend()

        self.ping_monitor = ping_monitor
        if self.ping_monitor is None and apis_handler.is_connected_as_regular_user:
            self.ping_monitor = PingMonitor(
                apis_handler.ping,
                apis_handler.re_login,
                self._on_ping_failure,
                name=self.web_server_uri,
            )

    @classmethod
    async def create(
        cls,
        uri: str,
        credentials: Credentials,
        on_failure: FailureCallback | None = None,
        pixel_backend_factory: PixelBackendFactory | None = None,
        can_be_closed: Callable[[Client], bool] | None = None,
        thumbnail_cache: ThumbnailCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Client:
        """Connect to the server hosting ``uri``.

        Args:
            uri: Any address of the server (an entity link works too)
            credentials: Credentials to log in with
            on_failure: Called with the client and the last error when the
                session is lost and the client closed itself
            pixel_backend_factory: Builds the pixel backends of the client.
                Defaults to the web backend only.
            can_be_closed: Predicate telling whether the client is still used
            thumbnail_cache: Optional disk cache of thumbnails
            transport: Optional HTTP transport (tests use a mock transport)

        Raises:
            InvalidArgument: If ``uri`` has no scheme or host
        """
        web_server_uri = get_server_uri(uri)
        apis_handler = await ApisHandler.create(
            web_server_uri, credentials, thumbnail_cache, transport
        )

        try:
            pixel_backends = (
                list(pixel_backend_factory(apis_handler))
                if pixel_backend_factory is not None
                else [WebPixelBackend(apis_handler)]
            )
        except BaseException:
            await apis_handler.close()
            raise

        client = cls(apis_handler, pixel_backends, on_failure, can_be_closed)
        if client.ping_monitor is not None:
            client.ping_monitor.start()

        logger.info(
            "Connected to the OMERO.web instance at %s with %s", web_server_uri, credentials
        )
        return client

    def __str__(self) -> str:
        return f"Client of {self.web_server_uri} with {self.credentials}"

    def __repr__(self) -> str:
        return f"Client({self.web_server_uri!r}, {self.credentials!r})"

    @property
    def web_server_uri(self) -> str:
        return self.apis_handler.web_server_uri

    @property
    def credentials(self) -> Credentials:
        return self.apis_handler.credentials

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def add_close_listener(self, listener: Callable[[Client], None]) -> None:
        """Call ``listener`` with this client when it gets closed."""
        self._on_closed.append(listener)

    # ------------------------------------------------------------------
    # Pixel backends
    # ------------------------------------------------------------------

    @property
    def available_pixel_backends(self) -> list[PixelBackend]:
        return [backend for backend in self.pixel_backends if backend.is_available]

    @property
    def selected_pixel_backend(self) -> PixelBackend | None:
        with self._lock:
            return self._selected_pixel_backend

    def set_selected_pixel_backend(self, backend: PixelBackend) -> None:
        """Select the backend used to read pixels.

        Raises:
            InvalidArgument: If the backend does not belong to this client or
                is not available
        """
        if backend not in self.pixel_backends:
            raise InvalidArgument(f"{backend} is not a pixel backend of {self}")
        if not backend.is_available:
            raise InvalidArgument(f"{backend} is not available")

        with self._lock:
            self._selected_pixel_backend = backend
        logger.debug("%s selected for %s", backend.name, self)

    def _select_pixel_backend(self) -> None:
        available = self.available_pixel_backends
        raw_pixels = [backend for backend in available if backend.can_access_raw_pixels]
        selected = raw_pixels[0] if raw_pixels else (available[0] if available else None)
        with self._lock:
            self._selected_pixel_backend = selected
        logger.debug("Selected pixel backend of %s: %s", self.web_server_uri, selected)

    def _on_availability_changed(self, _available: bool) -> None:
        self._select_pixel_backend()

    # ------------------------------------------------------------------
    # Opened images
    # ------------------------------------------------------------------

    @property
    def opened_image_uris(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._opened_image_uris)

    def add_opened_image(self, uri: str) -> None:
        with self._lock:
            self._opened_image_uris.add(uri)

    def remove_opened_image(self, uri: str) -> None:
        with self._lock:
            self._opened_image_uris.discard(uri)

    def can_be_closed(self) -> bool:
        """Whether nothing uses this client anymore."""
        if self._can_be_closed is not None:
            return self._can_be_closed(self)
        return not self.opened_image_uris

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def _on_ping_failure(self, error: Exception | None) -> None:
        logger.error("Connection to %s lost: %s", self.web_server_uri, error)
        await self.close()

        if self._on_failure is not None:
            try:
                result = self._on_failure(self, error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Failure callback of %s failed", self)

    async def close(self) -> None:
        """Disconnect. Calling it again has no effect.

        Errors of the pixel backends and of the logout are logged, not raised.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        for listener in self._on_closed:
            try:
                listener(self)
            except Exception:
                logger.exception("Close listener of %s failed", self)

        if self.ping_monitor is not None:
            self.ping_monitor.stop()

        for backend in self.pixel_backends:
            backend.remove_availability_listener(self._on_availability_changed)
            try:
                await backend.close()
            except Exception:
                logger.exception("Error when closing %s", backend)

        await self.apis_handler.close()
        logger.info("Disconnected from the OMERO.web instance at %s", self.web_server_uri)
