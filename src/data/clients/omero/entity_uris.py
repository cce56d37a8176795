"""Conversions between web server links and entity references."""

from __future__ import annotations

import re
from urllib.parse import unquote, urlsplit, urlunsplit

from models.omero import EntityKind, EntityRef
from utils.exceptions import InvalidArgument

# Path segments of the web applications served under the server base address
SUB_APPLICATION_SEGMENTS = frozenset(
    {
        "webclient",
        "webgateway",
        "iviewer",
        "api",
        "static",
        "figure",
        "webadmin",
        "gallery",
        "omero_ms_image_region",
    }
)

# Tried in order against the decoded path and query; first match wins
ENTITY_PATTERNS: tuple[tuple[re.Pattern, EntityKind], ...] = (
    (re.compile(r"/webclient/\?show=project-(\d+)"), EntityKind.PROJECT),
    (re.compile(r"/webclient/\?show=dataset-(\d+)"), EntityKind.DATASET),
    (re.compile(r"/webclient/\?show=image-(\d+)"), EntityKind.IMAGE),
    (re.compile(r"/webclient/img_detail/(\d+)"), EntityKind.IMAGE),
    (re.compile(r"/webgateway/img_detail/(\d+)"), EntityKind.IMAGE),
    (re.compile(r"/iviewer/\?images=(\d+)"), EntityKind.IMAGE),
    (re.compile(r"show=screen-(\d+)"), EntityKind.SCREEN),
    (re.compile(r"show=plate-(\d+)"), EntityKind.PLATE),
    (re.compile(r"show=run-(\d+)"), EntityKind.PLATE_ACQUISITION),
    (re.compile(r"show=well-(\d+)"), EntityKind.WELL),
)

ENTITY_URI = "{}/webclient/?show={}-{}"


def get_server_uri(uri: str) -> str:
    """Reduce any link of a web server to the server base address.

    Keeps the scheme, the authority and the path prefix in front of the first
    web application segment (``webclient``, ``iviewer``, ...). Query,
    fragment and trailing slashes are dropped.

    Raises:
        InvalidArgument: If the link has no scheme or no authority
    """
    parts = urlsplit(uri.strip())
    if not parts.scheme or not parts.netloc:
        raise InvalidArgument(f"{uri} is not an absolute link (scheme://authority/...)")

    kept_segments = []
    for segment in parts.path.split("/"):
        if segment in SUB_APPLICATION_SEGMENTS:
            break
        if segment:
            kept_segments.append(segment)

    path = "/" + "/".join(kept_segments) if kept_segments else ""
    return urlunsplit((parts.scheme.lower(), parts.netloc, path, "", ""))


def parse_entity(uri: str) -> EntityRef | None:
    """Find the entity a web server link points to.

    Returns:
        The referenced entity, or None if the link matches no known pattern
    """
    parts = urlsplit(uri)
    target = unquote(parts.path + ("?" + parts.query if parts.query else ""))

    for pattern, kind in ENTITY_PATTERNS:
        match = pattern.search(target)
        if match:
            return EntityRef(kind, int(match.group(1)))
    return None


def create_entity_uri(web_server_uri: str, ref: EntityRef) -> str:
    """Build the webclient link of an entity.

    Raises:
        InvalidArgument: If ``ref`` is not an entity reference
    """
    if not isinstance(ref.kind, EntityKind):
        raise InvalidArgument(f"Cannot create a link for {ref}")
    return ENTITY_URI.format(web_server_uri.rstrip("/"), ref.kind.uri_label, ref.id)
