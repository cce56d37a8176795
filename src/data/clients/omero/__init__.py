"""Clients of the OMERO.web applications."""

from .entity_uris import create_entity_uri, get_server_uri, parse_entity
from .iviewer_api import IViewerApi
from .json_api import ChildrenKey, JsonApi, create_url_from_parameters
from .request_sender import RequestSender, decode_image
from .thumbnail_cache import ThumbnailCache
from .webclient_api import WebclientApi
from .webgateway_api import WebGatewayApi

__all__ = [
    "ChildrenKey",
    "IViewerApi",
    "JsonApi",
    "RequestSender",
    "ThumbnailCache",
    "WebGatewayApi",
    "WebclientApi",
    "create_entity_uri",
    "create_url_from_parameters",
    "decode_image",
    "get_server_uri",
    "parse_entity",
]
