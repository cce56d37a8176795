"""Utility functions and classes for the OMERO web client."""

from .config import get_config, reload_config, reset_config
from .di_container import (
    DIContainer,
    DIContainerError,
    ServiceKeys,
    configure_container,
    get_container,
    reset_container,
)
from .exceptions import (
    ConfigurationError,
    DecodeError,
    HttpError,
    InvalidArgument,
    NetworkError,
    OmeroClientError,
    ProtocolError,
)
from .logging_setup import setup_logging
from .lru_cache import LoadingCache
from .object_pool import ObjectPool

__all__ = [
    "ConfigurationError",
    "DIContainer",
    "DIContainerError",
    "DecodeError",
    "HttpError",
    "InvalidArgument",
    "LoadingCache",
    "NetworkError",
    "ObjectPool",
    "OmeroClientError",
    "ProtocolError",
    "ServiceKeys",
    "configure_container",
    "get_config",
    "get_container",
    "reload_config",
    "reset_config",
    "reset_container",
    "setup_logging",
]
