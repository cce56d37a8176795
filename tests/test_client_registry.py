"""Tests for Client and ClientRegistry."""

import asyncio
import json

import httpx
import pytest
from conftest import BASE, EVENT_CONTEXT, png_bytes

from models.omero import Credentials
from services.apis_handler import ApisHandler
from services.client import Client
from services.client_registry import ClientRegistry
from services.pixel_backends import PixelBackend, WebPixelBackend
from utils.exceptions import HttpError, InvalidArgument


class FakeBackend(PixelBackend):
    """Backend whose availability is driven by the test."""

    def __init__(self, name, raw_pixels, available):
        super().__init__(available)
        self.name = name
        self.can_access_raw_pixels = raw_pixels
        self.closed = False

    def set_available(self, available):
        self._set_available(available)

    async def close(self):
        self.closed = True


@pytest.fixture
async def registry(server):
    client_registry = ClientRegistry(transport=server.transport)
    yield client_registry
    await client_registry.close_all()


class TestClientRegistry:
    """Tests for ClientRegistry."""

    @pytest.mark.asyncio
    async def test_same_credentials_reuse_client(self, registry):
        first = await registry.create_or_get(f"{BASE}/webclient/?show=image-1", Credentials.public())
        second = await registry.create_or_get(f"{BASE}/iviewer/?images=2", Credentials.public())

        assert first is second
        assert registry.get_clients() == [first]
        assert registry.get_client(f"{BASE}/webgateway/") is first

    @pytest.mark.asyncio
    async def test_different_credentials_replace_client(self, server, registry):
        first = await registry.create_or_get(BASE, Credentials.public())
        second = await registry.create_or_get(BASE, Credentials.regular("alice", "secret"))

        assert first is not second
        assert first.is_closed
        assert not second.is_closed
        assert registry.get_clients() == [second]

    @pytest.mark.asyncio
    async def test_one_client_per_server(self, registry):
        await asyncio.gather(
            *(registry.create_or_get(f"{BASE}/webclient/", Credentials.public()) for _ in range(3))
        )

        assert len(registry.get_clients()) == 1

    @pytest.mark.asyncio
    async def test_failed_connection_registers_nothing(self, server, registry):
        server.get("/api/", httpx.Response(503))

        with pytest.raises(HttpError):
            await registry.create_or_get(BASE, Credentials.public())

        assert registry.get_clients() == []

    @pytest.mark.asyncio
    async def test_invalid_uri(self, registry):
        with pytest.raises(InvalidArgument):
            await registry.create_or_get("omero.example.org", Credentials.public())

    @pytest.mark.asyncio
    async def test_closed_client_is_removed(self, registry):
        client = await registry.create_or_get(BASE, Credentials.public())

        await client.close()

        assert registry.get_client(BASE) is None

    @pytest.mark.asyncio
    async def test_close_all(self, server):
        client_registry = ClientRegistry(transport=server.transport)
        client = await client_registry.create_or_get(BASE, Credentials.regular("alice", "x"))

        await client_registry.close_all()
        await client_registry.close_all()

        assert client.is_closed
        assert client_registry.get_clients() == []
        assert server.count("POST", "/webclient/logout/") == 1


class TestWebPixelBackend:
    """Tests for WebPixelBackend."""

    @pytest.mark.asyncio
    async def test_reads_tiles_within_connection_limit(self, server):
        def handler(request):
            if request.url.path.startswith("/webgateway/render_image_region/"):
                return httpx.Response(200, content=png_bytes((256, 256)))
            return server.handler(request)

        apis_handler = await ApisHandler.create(
            BASE, Credentials.public(), transport=httpx.MockTransport(handler)
        )
        backend = WebPixelBackend(apis_handler, max_connections=2)

        assert backend.is_available
        assert not backend.can_access_raw_pixels
        tiles = await asyncio.gather(
            *(backend.read_tile(5, 0, 0, 0, 0, 0, 256, 256) for _ in range(4))
        )

        assert all(tile.size == (256, 256) for tile in tiles)
        assert backend.available_connections == 2
        await apis_handler.close()


class TestClient:
    """Tests for Client."""

    @pytest.mark.asyncio
    async def test_connects_with_web_backend(self, server):
        client = await Client.create(
            f"{BASE}/webclient/?show=project-3", Credentials.public(), transport=server.transport
        )

        assert client.web_server_uri == BASE
        assert str(client) == f"Client of {BASE} with Public user"
        assert isinstance(client.selected_pixel_backend, WebPixelBackend)
        assert client.ping_monitor is None
        await client.close()

    @pytest.mark.asyncio
    async def test_regular_user_is_pinged(self, server):
        client = await Client.create(
            BASE, Credentials.regular("alice", "x"), transport=server.transport
        )

        assert client.ping_monitor.is_running
        await client.close()

        assert not client.ping_monitor.is_running

    @pytest.mark.asyncio
    async def test_raw_pixel_backend_is_preferred(self, server):
        web = FakeBackend("web", raw_pixels=False, available=True)
        raw = FakeBackend("raw", raw_pixels=True, available=False)
        client = await Client.create(
            BASE,
            Credentials.public(),
            pixel_backend_factory=lambda apis_handler: [web, raw],
            transport=server.transport,
        )

        assert client.selected_pixel_backend is web
        raw.set_available(True)
        assert client.selected_pixel_backend is raw
        raw.set_available(False)
        assert client.selected_pixel_backend is web
        web.set_available(False)
        assert client.selected_pixel_backend is None

        await client.close()
        assert web.closed and raw.closed

    @pytest.mark.asyncio
    async def test_select_pixel_backend(self, server):
        first = FakeBackend("first", raw_pixels=True, available=True)
        second = FakeBackend("second", raw_pixels=False, available=True)
        unavailable = FakeBackend("unavailable", raw_pixels=False, available=False)
        client = await Client.create(
            BASE,
            Credentials.public(),
            pixel_backend_factory=lambda apis_handler: [first, second, unavailable],
            transport=server.transport,
        )

        client.set_selected_pixel_backend(second)
        assert client.selected_pixel_backend is second

        with pytest.raises(InvalidArgument):
            client.set_selected_pixel_backend(unavailable)
        with pytest.raises(InvalidArgument):
            client.set_selected_pixel_backend(FakeBackend("other", True, True))
        await client.close()

    @pytest.mark.asyncio
    async def test_opened_images_prevent_closing(self, server):
        client = await Client.create(BASE, Credentials.public(), transport=server.transport)
        uri = f"{BASE}/webclient/?show=image-1"

        client.add_opened_image(uri)
        assert not client.can_be_closed()
        client.remove_opened_image(uri)
        assert client.can_be_closed()
        await client.close()

    @pytest.mark.asyncio
    async def test_custom_close_predicate(self, server):
        client = await Client.create(
            BASE,
            Credentials.public(),
            can_be_closed=lambda c: False,
            transport=server.transport,
        )

        assert not client.can_be_closed()
        await client.close()

    @pytest.mark.asyncio
    async def test_lost_session_closes_client_and_reports_failure(self, server):
        logins = [httpx.Response(200, text=json.dumps(EVENT_CONTEXT)), httpx.Response(500)]
        server.post("/api/v0/login/", lambda request: logins.pop(0))
        server.get("/webclient/keepalive_ping/", httpx.Response(403))
        client_registry = ClientRegistry(transport=server.transport)
        failures = []
        reported = asyncio.Event()

        def on_failure(client, error):
            failures.append((client, error))
            reported.set()

        client = await client_registry.create_or_get(
            BASE, Credentials.regular("alice", "x"), on_failure=on_failure
        )
        await asyncio.wait_for(reported.wait(), timeout=5)

        assert failures[0][0] is client
        assert isinstance(failures[0][1], HttpError)
        assert client.is_closed
        assert client_registry.get_clients() == []
