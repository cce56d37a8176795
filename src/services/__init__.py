"""Service layer of the OMERO client.

Submodules:
    apis_handler   : session combining every API of one server
    client         : connection with pixel backends and keep-alive
    client_registry: one client per server, explicit shutdown
    ping_monitor   : keep-alive state machine
    pixel_backends : pixel backend interface and web tile backend
"""

from .apis_handler import ApisHandler
from .client import Client
from .client_registry import ClientRegistry
from .ping_monitor import PingMonitor, PingState
from .pixel_backends import PixelBackend, WebPixelBackend

__all__ = [
    "ApisHandler",
    "Client",
    "ClientRegistry",
    "PingMonitor",
    "PingState",
    "PixelBackend",
    "WebPixelBackend",
]
