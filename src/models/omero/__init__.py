"""OMERO data models (domain layer)."""

from .annotations import (
    Annotation,
    AnnotationGroup,
    CommentAnnotation,
    FileAnnotation,
    MapAnnotation,
    RatingAnnotation,
    TagAnnotation,
)
from .credentials import Credentials, UserType
from .entities import (
    ENTITY_CLASSES,
    Dataset,
    EntityKind,
    EntityRef,
    Experimenter,
    ExperimenterGroup,
    Image,
    Plate,
    PlateAcquisition,
    Project,
    Screen,
    ServerEntity,
    Shape,
    Well,
)
from .image_settings import ChannelSettings, ImageSettings
from .server import Links, LoginResponse, ServerInfo, SupportedVersion

__all__ = [
    "ENTITY_CLASSES",
    "Annotation",
    "AnnotationGroup",
    "ChannelSettings",
    "CommentAnnotation",
    "Credentials",
    "Dataset",
    "EntityKind",
    "EntityRef",
    "Experimenter",
    "ExperimenterGroup",
    "FileAnnotation",
    "Image",
    "ImageSettings",
    "Links",
    "LoginResponse",
    "MapAnnotation",
    "Plate",
    "PlateAcquisition",
    "Project",
    "RatingAnnotation",
    "Screen",
    "ServerEntity",
    "ServerInfo",
    "Shape",
    "SupportedVersion",
    "TagAnnotation",
    "UserType",
    "Well",
]
