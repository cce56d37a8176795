"""Process-wide registry of open clients, one per server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

from data.clients.omero import ThumbnailCache, get_server_uri
from models.omero import Credentials

from .client import Client, FailureCallback, PixelBackendFactory

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Map of server base address to its open client.

    Create one at startup and call ``close_all()`` from the exit path of the
    application.
    """

    def __init__(
        self,
        thumbnail_cache: ThumbnailCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._thumbnail_cache = thumbnail_cache
        self._transport = transport
        self._clients: dict[str, Client] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"ClientRegistry({list(self._clients)})"

    async def create_or_get(
        self,
        uri: str,
        credentials: Credentials,
        on_failure: FailureCallback | None = None,
        pixel_backend_factory: PixelBackendFactory | None = None,
        can_be_closed: Callable[[Client], bool] | None = None,
    ) -> Client:
        """Return the client of the server hosting ``uri``, connecting if needed.

        An existing client is reused when its credentials match. Otherwise it
        is closed and replaced. Nothing is registered if the connection fails.

        Raises:
            InvalidArgument: If ``uri`` has no scheme or host
        """
        web_server_uri = get_server_uri(uri)

        async with self._lock:
            existing = self._clients.get(web_server_uri)
            if existing is not None and not existing.is_closed:
                if existing.credentials == credentials:
                    logger.debug("Reusing %s", existing)
                    return existing

                logger.info("Closing %s before connecting with %s", existing, credentials)
                try:
                    await existing.close()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Error when closing %s", existing)
            self._clients.pop(web_server_uri, None)

            client = await Client.create(
                web_server_uri,
                credentials,
                on_failure=on_failure,
                pixel_backend_factory=pixel_backend_factory,
                can_be_closed=can_be_closed,
                thumbnail_cache=self._thumbnail_cache,
                transport=self._transport,
            )
            client.add_close_listener(self.remove)
            self._clients[web_server_uri] = client
            return client

    def get_clients(self) -> list[Client]:
        return list(self._clients.values())

    def get_client(self, uri: str) -> Client | None:
        """Client of the server hosting ``uri``, if one is open."""
        return self._clients.get(get_server_uri(uri))

    def remove(self, client: Client) -> None:
        """Forget a client without closing it."""
        if self._clients.get(client.web_server_uri) is client:
            del self._clients[client.web_server_uri]
            logger.debug("%s removed from the registry", client)

    async def close_all(self) -> None:
        """Close every registered client once. Errors are logged."""
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        for client in clients:
            try:
                await client.close()
            except Exception:
                logger.exception("Error when closing %s", client)
