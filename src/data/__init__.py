from .clients.omero import IViewerApi, JsonApi, RequestSender, WebclientApi, WebGatewayApi

__all__ = [
    "IViewerApi",
    "JsonApi",
    "RequestSender",
    "WebGatewayApi",
    "WebclientApi",
]
