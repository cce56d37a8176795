"""Tests for the webclient, webgateway and iviewer APIs."""

import json
from urllib.parse import parse_qs, unquote

import httpx
import pytest
from conftest import BASE, FakeOmeroServer, png_bytes

from data.clients.omero import (
    IViewerApi,
    RequestSender,
    ThumbnailCache,
    WebclientApi,
    WebGatewayApi,
)
from models.omero import ChannelSettings, EntityKind, EntityRef, FileAnnotation, Shape
from utils.exceptions import DecodeError, InvalidArgument, NetworkError


@pytest.fixture
def fake():
    return FakeOmeroServer()


@pytest.fixture
async def sender(fake):
    request_sender = RequestSender(transport=fake.transport)
    yield request_sender
    await request_sender.close()


class TestWebclientApi:
    """Tests for WebclientApi."""

    @pytest.mark.asyncio
    async def test_ping(self, fake, sender):
        api = WebclientApi(BASE, sender, "token")
        fake.get("/webclient/keepalive_ping/", "OK")

        await api.ping()

        fake.get("/webclient/keepalive_ping/", httpx.Response(403))
        with pytest.raises(NetworkError):
            await api.ping()

    @pytest.mark.asyncio
    async def test_logout_posts_csrf_token(self, fake, sender):
        fake.post("/webclient/logout/", "")

        await WebclientApi(BASE, sender, "token").logout()

        request = fake.requests[-1]
        assert request.content == b"csrfmiddlewaretoken=token"
        assert request.headers["Referer"] == f"{BASE}/webclient/logout/"

    @pytest.mark.asyncio
    async def test_public_user_id_is_scraped(self, fake, sender):
        fake.get(
            "/webclient/",
            "<script>WEBCLIENT.USER = {'id': 52, 'fullName': 'Public User'};</script>",
        )

        assert await WebclientApi(BASE, sender, "token").get_public_user_id() == 52

    @pytest.mark.asyncio
    async def test_public_user_id_not_found(self, fake, sender):
        fake.get("/webclient/", "<html></html>")

        with pytest.raises(DecodeError):
            await WebclientApi(BASE, sender, "token").get_public_user_id()

    @pytest.mark.asyncio
    async def test_parents_of_image_skip_unknown_types(self, fake, sender):
        fake.get(
            "/webclient/api/paths_to_object/?image=5",
            {
                "paths": [
                    [
                        {"type": "experimenter", "id": 7},
                        {"type": "project", "id": 1},
                        {"type": "dataset", "id": 2},
                        {"type": "image", "id": 5},
                    ],
                    [{"type": "screen", "id": 3}, {"type": "acquisition", "id": 4}],
                ]
            },
        )

        parents = await WebclientApi(BASE, sender, "token").get_parents_of_image(5)

        assert parents == [
            EntityRef(EntityKind.PROJECT, 1),
            EntityRef(EntityKind.DATASET, 2),
            EntityRef(EntityKind.IMAGE, 5),
            EntityRef(EntityKind.SCREEN, 3),
            EntityRef(EntityKind.PLATE_ACQUISITION, 4),
        ]

    @pytest.mark.asyncio
    async def test_icon_of_unserved_kind(self, sender):
        with pytest.raises(ValueError):
            await WebclientApi(BASE, sender, "token").get_icon(EntityKind.PROJECT)


def annotations_response(*annotations):
    return {
        "annotations": list(annotations),
        "experimenters": [{"id": 7, "firstName": "Alice", "lastName": "Smith"}],
    }


def map_annotation(annotation_id, *pairs):
    return {
        "id": annotation_id,
        "class": "MapAnnotationI",
        "owner": {"id": 7},
        "values": [list(pair) for pair in pairs],
    }


def file_annotation(annotation_id, name):
    return {
        "id": annotation_id,
        "class": "FileAnnotationI",
        "owner": {"id": 7},
        "file": {"name": name, "mimetype": "text/csv", "size": 12},
    }


class TestWebclientAnnotations:
    """Tests for the annotation endpoints of WebclientApi."""

    @pytest.mark.asyncio
    async def test_get_annotations_of_plate_acquisition(self, fake, sender):
        fake.get(
            "/webclient/api/annotations/?run=4",
            annotations_response(file_annotation(9, "table.csv")),
        )

        group = await WebclientApi(BASE, sender, "token").get_annotations(
            EntityRef(EntityKind.PLATE_ACQUISITION, 4)
        )

        assert [a.file_name for a in group.of_type(FileAnnotation)] == ["table.csv"]
        assert group.annotations[0].owner_name == "Alice Smith"

    @pytest.mark.asyncio
    async def test_wells_cannot_be_annotated(self, sender):
        api = WebclientApi(BASE, sender, "token")
        well_ref = EntityRef(EntityKind.WELL, 1)

        with pytest.raises(InvalidArgument):
            await api.get_annotations(well_ref)
        with pytest.raises(InvalidArgument):
            await api.send_attachment(well_ref, "table.csv", "a,b")

    @pytest.mark.asyncio
    async def test_key_value_pairs_are_merged_with_existing(self, fake, sender):
        fake.get(
            "/webclient/api/annotations/?image=5",
            annotations_response(map_annotation(11, ("stain", "DAPI"), ("lab", "A"))),
        )
        fake.post("/webclient/annotate_map/", {"annId": [12]})

        await WebclientApi(BASE, sender, "token").send_key_value_pairs(
            5, {"lab": "B", "slide": "3"}, replace_existing=True
        )

        removal, creation = fake.requests[-2:]
        assert parse_qs(removal.content.decode()) == {
            "image": ["5"],
            "annId": ["11"],
            "mapAnnotation": ['""'],
        }
        body = parse_qs(creation.content.decode())
        assert body["image"] == ["5"]
        assert json.loads(body["mapAnnotation"][0]) == [
            ["stain", "DAPI"],
            ["lab", "B"],
            ["slide", "3"],
        ]
        assert creation.headers["Referer"] == f"{BASE}/webclient/"

    @pytest.mark.asyncio
    async def test_key_value_pairs_keep_existing_values(self, fake, sender):
        fake.get(
            "/webclient/api/annotations/?image=5",
            annotations_response(map_annotation(11, ("lab", "A"))),
        )
        fake.post("/webclient/annotate_map/", {"annId": [12]})

        await WebclientApi(BASE, sender, "token").send_key_value_pairs(
            5, {"lab": "B"}, replace_existing=False
        )

        body = parse_qs(fake.requests[-1].content.decode())
        assert json.loads(body["mapAnnotation"][0]) == [["lab", "A"]]

    @pytest.mark.asyncio
    async def test_key_value_pairs_delete_existing(self, fake, sender):
        fake.get(
            "/webclient/api/annotations/?image=5",
            annotations_response(map_annotation(11, ("lab", "A"))),
        )
        fake.post("/webclient/annotate_map/", {"annId": [12]})

        await WebclientApi(BASE, sender, "token").send_key_value_pairs(
            5, {"slide": "3"}, delete_existing=True
        )

        body = parse_qs(fake.requests[-1].content.decode())
        assert json.loads(body["mapAnnotation"][0]) == [["slide", "3"]]

    @pytest.mark.asyncio
    async def test_key_value_pairs_not_acknowledged(self, fake, sender):
        fake.get("/webclient/api/annotations/?image=5", annotations_response())
        fake.post("/webclient/annotate_map/", {"error": "denied"})

        with pytest.raises(DecodeError):
            await WebclientApi(BASE, sender, "token").send_key_value_pairs(5, {"a": "b"})

    @pytest.mark.asyncio
    async def test_change_image_name(self, fake, sender):
        fake.post("/webclient/action/savename/image/5/", {"o_type": "image"})

        await WebclientApi(BASE, sender, "token").change_image_name(5, "new name")

        assert parse_qs(fake.requests[-1].content.decode()) == {"name": ["new name"]}

        fake.post("/webclient/action/savename/image/5/", "<html>error</html>")
        with pytest.raises(DecodeError):
            await WebclientApi(BASE, sender, "token").change_image_name(5, "other")

    @pytest.mark.asyncio
    async def test_change_channel_names(self, fake, sender):
        fake.post("/webclient/edit_channel_names/5/", {"channelNames": {}})

        await WebclientApi(BASE, sender, "token").change_channel_names(5, ["DAPI", "GFP"])

        assert fake.requests[-1].content == b"channel0=DAPI&channel1=GFP&save=save"

    @pytest.mark.asyncio
    async def test_send_attachment(self, fake, sender):
        fake.post("/webclient/annotate_file/", {"fileIds": [31]})

        await WebclientApi(BASE, sender, "token").send_attachment(
            EntityRef(EntityKind.DATASET, 2), "table.csv", "a,b\n1,2"
        )

        body = fake.requests[-1].content.decode()
        assert 'filename="table.csv"' in body
        assert 'name="dataset"\r\n\r\n2\r\n' in body
        assert 'name="index"\r\n\r\n\r\n' in body

    @pytest.mark.asyncio
    async def test_send_attachment_without_file_id(self, fake, sender):
        fake.post("/webclient/annotate_file/", {"fileIds": []})

        with pytest.raises(DecodeError):
            await WebclientApi(BASE, sender, "token").send_attachment(
                EntityRef(EntityKind.IMAGE, 5), "table.csv", "a,b"
            )

    @pytest.mark.asyncio
    async def test_delete_attachments_deletes_only_files(self, fake, sender):
        fake.get(
            "/webclient/api/annotations/?project=1",
            annotations_response(
                file_annotation(9, "first.csv"),
                map_annotation(10, ("a", "b")),
                file_annotation(11, "second.csv"),
            ),
        )
        fake.post("/webclient/action/delete/file/9/", {"bad": "false"})
        fake.post("/webclient/action/delete/file/11/", {"bad": "false"})

        await WebclientApi(BASE, sender, "token").delete_attachments(
            EntityRef(EntityKind.PROJECT, 1)
        )

        assert fake.count("POST", "/webclient/action/delete/file/9/") == 1
        assert fake.count("POST", "/webclient/action/delete/file/11/") == 1
        assert fake.count("POST", "/webclient/action/delete/file/10/") == 0


class TestWebGatewayApi:
    """Tests for WebGatewayApi."""

    @pytest.mark.asyncio
    async def test_thumbnail_is_cached_on_disk(self, fake, sender, tmp_path):
        fake.get("/webgateway/render_thumbnail/5/64", png_bytes((64, 32)))
        cache = ThumbnailCache(tmp_path / "thumbnails")
        api = WebGatewayApi(BASE, sender, "token", cache)

        first = await api.get_thumbnail(5, 64)
        second = await api.get_thumbnail(5, 64)

        assert first.size == second.size == (64, 32)
        assert fake.count("GET", "/webgateway/render_thumbnail/5/64") == 1
        assert api.number_of_thumbnails_loading == 0
        cache.close()

    @pytest.mark.asyncio
    async def test_invalid_thumbnail_is_not_cached(self, fake, sender, tmp_path):
        fake.get("/webgateway/render_thumbnail/5/64", b"oops")
        cache = ThumbnailCache(tmp_path / "thumbnails")
        api = WebGatewayApi(BASE, sender, "token", cache)

        with pytest.raises(DecodeError):
            await api.get_thumbnail(5, 64)

        assert cache.get(BASE, 5, 64) is None
        assert api.number_of_thumbnails_loading == 0
        cache.close()

    @pytest.mark.asyncio
    async def test_image_metadata_is_cached(self, fake, sender):
        fake.get("/webgateway/imgData/5", {"id": 5, "size": {"width": 10}})
        api = WebGatewayApi(BASE, sender, "token")

        assert (await api.get_image_metadata(5))["id"] == 5
        await api.get_image_metadata(5)

        assert fake.count("GET", "/webgateway/imgData/5") == 1

    @pytest.mark.asyncio
    async def test_read_tile_requests_region(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=png_bytes((256, 256)))

        tile_sender = RequestSender(transport=httpx.MockTransport(handler))
        api = WebGatewayApi(BASE, tile_sender, "token")

        tile = await api.read_tile(5, 0, 1, 2, 512, 256, 256, 256, quality=0.8)

        url = requests[0].url
        assert tile.size == (256, 256)
        assert url.path == "/webgateway/render_image_region/5/0/1/"
        assert url.params["tile"] == "2,2,1,256,256"
        assert url.params["c"] == "1|0:255$FF0000,2|0:255$00FF00,3|0:255$0000FF"
        assert url.params["m"] == "c"
        assert url.params["q"] == "0.800000"
        await tile_sender.close()

    @pytest.mark.asyncio
    async def test_rendering_settings_are_posted(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="true")

        settings_sender = RequestSender(transport=httpx.MockTransport(handler))
        api = WebGatewayApi(BASE, settings_sender, "token")

        await api.change_channel_display_ranges_and_colors(
            5,
            [
                ChannelSettings(min_display_range=0, max_display_range=255, rgb_color=0xFF0000),
                ChannelSettings(min_display_range=1.5, max_display_range=9, rgb_color=0x00FF00),
            ],
        )

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/webgateway/saveImgRDef/5/"
        assert unquote(request.url.params["c"]) == (
            "1|0.000000:255.000000$FF0000,2|1.500000:9.000000$00FF00"
        )
        assert request.headers["Referer"] == f"{BASE}/iviewer/?images=5"
        await settings_sender.close()

    @pytest.mark.asyncio
    async def test_unacknowledged_rendering_settings_raise(self):
        settings_sender = RequestSender(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="false"))
        )
        api = WebGatewayApi(BASE, settings_sender, "token")

        with pytest.raises(DecodeError):
            await api.change_channel_display_ranges_and_colors(5, [])
        await settings_sender.close()


class TestIViewerApi:
    """Tests for IViewerApi."""

    @pytest.mark.asyncio
    async def test_image_settings(self, fake, sender):
        fake.get(
            "/iviewer/image_data/5/",
            {
                "meta": {"imageName": "cells"},
                "channels": [{"label": "DAPI", "color": "0000FF", "window": {"start": 0, "end": 9}}],
            },
        )

        settings = await IViewerApi(BASE, sender, "token").get_image_settings(5)

        assert settings.name == "cells"
        assert settings.channels[0].max_display_range == 9

    @pytest.mark.asyncio
    async def test_add_and_delete_shapes(self, fake, sender):
        fake.post("/iviewer/persist_rois/", '{"ids": {}}')
        api = IViewerApi(BASE, sender, "token")
        new = Shape.model_validate({"@type": "Point", "X": 1.0, "Y": 2.0})
        old = Shape.model_validate({"@type": "Point", "@id": 10, "roi_id": 1})

        await api.add_shapes(5, [new])
        await api.delete_shapes(5, [old])

        added = json.loads(fake.requests[0].content)
        deleted = json.loads(fake.requests[1].content)
        assert added["imageId"] == 5
        assert added["rois"]["count"] == 1
        assert added["rois"]["new"] == [{"@type": "Point", "X": 1.0, "Y": 2.0}]
        assert deleted["rois"]["deleted"] == {"1": ["1:10"]}
        assert fake.requests[0].headers["Referer"] == f"{BASE}/iviewer/?images=5"

    @pytest.mark.asyncio
    async def test_error_response_raises(self, fake, sender):
        fake.post("/iviewer/persist_rois/", '{"Error": "no permission"}')
        shape = Shape.model_validate({"@type": "Point"})

        with pytest.raises(DecodeError):
            await IViewerApi(BASE, sender, "token").add_shapes(5, [shape])

    @pytest.mark.asyncio
    async def test_no_shapes_sends_nothing(self, fake, sender):
        await IViewerApi(BASE, sender, "token").add_shapes(5, [])

        assert fake.requests == []
