"""OMERO data models (domain layer)."""

from .omero import (
    AnnotationGroup,
    ChannelSettings,
    Credentials,
    EntityKind,
    EntityRef,
    ImageSettings,
    LoginResponse,
    ServerEntity,
    Shape,
    UserType,
)

__all__ = [
    "AnnotationGroup",
    "ChannelSettings",
    "Credentials",
    "EntityKind",
    "EntityRef",
    "ImageSettings",
    "LoginResponse",
    "ServerEntity",
    "Shape",
    "UserType",
]
