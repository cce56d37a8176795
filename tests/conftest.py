"""Pytest configuration and shared fixtures."""

import io
import json
import sys
from pathlib import Path

import httpx
import pytest

# Add src to Python path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

BASE = "https://omero.example.org"
API = f"{BASE}/api/v0"
OMERO_TYPE = "http://www.openmicroscopy.org/Schemas/OME/2016-06#"

EVENT_CONTEXT = {
    "eventContext": {
        "groupId": 4,
        "userId": 7,
        "sessionUuid": "abc",
        "isAdmin": False,
        "leaderOfGroups": [],
    }
}


def page(elements, limit=200, total_count=None):
    """One page of a paginated JSON API list."""
    return {
        "meta": {
            "limit": limit,
            "totalCount": len(elements) if total_count is None else total_count,
        },
        "data": elements,
    }


def entity(kind, entity_id, name=None, **fields):
    """JSON API representation of an entity."""
    raw = {"@id": entity_id, "@type": OMERO_TYPE + kind, "Name": name or f"{kind} {entity_id}"}
    if kind == "Image":
        raw["Pixels"] = {"SizeX": 100, "SizeY": 80, "SizeC": 3, "Type": {"value": "uint8"}}
    raw.update(fields)
    return raw


def well(well_id, *samples):
    """Well whose samples are (image id, plate acquisition id or None) pairs."""
    well_samples = []
    for image_id, plate_acquisition_id in samples:
        sample = {"Image": {"@id": image_id}}
        if plate_acquisition_id is not None:
            sample["PlateAcquisition"] = {"@id": plate_acquisition_id}
        well_samples.append(sample)
    return entity("Well", well_id, WellSamples=well_samples)


def png_bytes(size=(2, 2), color=(255, 0, 0)):
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeOmeroServer:
    """Routes (method, path?query) to canned responses and records requests."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, response):
        """Register a response: a dict/list (JSON), str, bytes, httpx.Response or callable."""
        self.routes[(method, path)] = response

    def get(self, path, response):
        self.add("GET", path, response)

    def post(self, path, response):
        self.add("POST", path, response)

    def handler(self, request):
        self.requests.append(request)
        key = (request.method, request.url.raw_path.decode("ascii"))
        response = self.routes.get(key)
        if response is None:
            return httpx.Response(404, text=f"No route for {key}")
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            # a fresh copy, since a response can be registered for several requests
            return httpx.Response(
                response.status_code, headers=response.headers, content=response.content
            )
        if isinstance(response, bytes):
            return httpx.Response(200, content=response)
        if isinstance(response, str):
            return httpx.Response(200, text=response)
        return httpx.Response(200, json=response)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def count(self, method, path):
        return sum(
            1
            for request in self.requests
            if request.method == method and request.url.raw_path.decode("ascii") == path
        )

    def add_startup(self, event_context=EVENT_CONTEXT):
        """Register the endpoints queried when connecting."""
        self.get("/api/", {"data": [{"version": "0", "url:base": f"{API}/"}]})
        self.get(
            "/api/v0/",
            {
                "url:experimenters": f"{API}/m/experimenters/",
                "url:experimentergroups": f"{API}/m/experimentergroups/",
                "url:projects": f"{API}/m/projects/",
                "url:datasets": f"{API}/m/datasets/",
                "url:images": f"{API}/m/images/",
                "url:screens": f"{API}/m/screens/",
                "url:plates": f"{API}/m/plates/",
                "url:token": f"{API}/token/",
                "url:servers": f"{API}/servers/",
                "url:login": f"{API}/login/",
            },
        )
        self.get("/api/v0/token/", {"data": "csrf-token"})
        self.get(
            "/api/v0/servers/",
            {"data": [{"host": "omero.example.org", "port": 4064, "id": 1}]},
        )
        self.post("/api/v0/login/", json.dumps(event_context))
        self.get("/webclient/keepalive_ping/", "OK")
        self.post("/webclient/logout/", "")


@pytest.fixture
def server():
    """Fake OMERO.web server with the connection endpoints registered."""
    fake = FakeOmeroServer()
    fake.add_startup()
    return fake


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep caches and logs of every test in its own directory."""
    from utils.config import reset_config

    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("APP_LOG_LEVEL", raising=False)
    reset_config()
    yield
    reset_config()
