"""Dependency injection container wiring the OMERO client services.

Usage:
    from utils.di_container import ServiceKeys, configure_container

    container = configure_container()
    registry = container.resolve(ServiceKeys.CLIENT_REGISTRY)
    ...
    await registry.close_all()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from utils.exceptions import OmeroClientError

logger = logging.getLogger(__name__)


class DIContainerError(OmeroClientError):
    """Raised when resolving a key that was never registered."""


class DIContainer:
    """Registry of service instances and lazy factories. Thread-safe."""

    def __init__(self) -> None:
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Callable[[DIContainer], Any]] = {}
        self._lock = threading.RLock()

    def register(self, key: str, instance: Any) -> None:
        with self._lock:
            if key in self._services:
                logger.debug("Overwriting existing service: %s", key)
            self._services[key] = instance
            logger.debug("Registered service: %s", key)

    def register_factory(self, key: str, factory: Callable[[DIContainer], Any]) -> None:
        """Register a factory called with the container on first resolution."""
        with self._lock:
            if key in self._factories:
                logger.debug("Overwriting existing factory: %s", key)
            self._factories[key] = factory
            logger.debug("Registered factory: %s", key)

    def resolve(self, key: str) -> Any:
        """Return the service of ``key``, building it from its factory once.

        Raises:
            DIContainerError: If nothing is registered under ``key``
        """
        with self._lock:
            if key in self._services:
                return self._services[key]

            if key in self._factories:
                logger.debug("Creating service from factory: %s", key)
                instance = self._factories[key](self)
                self._services[key] = instance
                return instance

            raise DIContainerError(
                f"Service '{key}' not registered. Available: {self.get_registered_keys()}"
            )

    def resolve_optional(self, key: str) -> Any | None:
        try:
            return self.resolve(key)
        except DIContainerError:
            return None

    def is_registered(self, key: str) -> bool:
        with self._lock:
            return key in self._services or key in self._factories

    def clear(self) -> None:
        with self._lock:
            self._services.clear()
            self._factories.clear()
            logger.debug("Container cleared")

    def get_registered_keys(self) -> list[str]:
        with self._lock:
            return sorted(set(self._services) | set(self._factories))


class ServiceKeys:
    """Keys of the services registered by configure_container()."""

    CONFIG = "config"
    THUMBNAIL_CACHE = "thumbnail_cache"
    CLIENT_REGISTRY = "client_registry"


_container_instance: DIContainer | None = None
_container_lock = threading.Lock()


def get_container() -> DIContainer:
    """Global container, created on first use."""
    global _container_instance  # noqa: PLW0603
    if _container_instance is None:
        with _container_lock:
            if _container_instance is None:
                _container_instance = DIContainer()
    assert _container_instance is not None
    return _container_instance


def reset_container() -> None:
    """Drop the global container. Primarily for testing."""
    global _container_instance  # noqa: PLW0603
    with _container_lock:
        if _container_instance is not None:
            _container_instance.clear()
        _container_instance = None


def configure_container(container: DIContainer | None = None) -> DIContainer:
    """Register the config and lazy factories of the client services.

    Args:
        container: Container to configure (uses global if None)

    Returns:
        Configured container
    """
    if container is None:
        container = get_container()

    from utils.config import get_config

    container.register(ServiceKeys.CONFIG, get_config())

    def thumbnail_cache_factory(c: DIContainer) -> Any:
        from data.clients.omero import ThumbnailCache

        config = c.resolve(ServiceKeys.CONFIG)
        return ThumbnailCache(config.omero.thumbnail_cache_dir_path)

    container.register_factory(ServiceKeys.THUMBNAIL_CACHE, thumbnail_cache_factory)

    # The registry is the single owner of every client; close_all() must be
    # awaited on exit.
    def client_registry_factory(c: DIContainer) -> Any:
        from services.client_registry import ClientRegistry

        return ClientRegistry(thumbnail_cache=c.resolve(ServiceKeys.THUMBNAIL_CACHE))

    container.register_factory(ServiceKeys.CLIENT_REGISTRY, client_registry_factory)

    logger.debug("DI container configured with %d services", len(container.get_registered_keys()))
    return container
