"""HTTP layer shared by every OMERO web API.

Wraps one ``httpx.AsyncClient`` (one cookie jar) per logical session,
following redirects and applying a fixed timeout to every request.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import math
import random
import string
from collections.abc import AsyncIterator
from typing import Any, TypeVar

import httpx
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError

from utils import get_config
from utils.exceptions import DecodeError, HttpError, NetworkError

logger = logging.getLogger(__name__)

# Constants
HTTP_STATUS_OK = 200
MULTIPART_BOUNDARY_LENGTH = 10
ANNOTATION_FILE_PART_NAME = "annotation_file"

M = TypeVar("M", bound=BaseModel)


def _random_boundary() -> str:
    return "".join(
        random.choice(string.ascii_lowercase) for _ in range(MULTIPART_BOUNDARY_LENGTH)
    )


def _append_query(uri: str, parameter: str) -> str:
    delimiter = "&" if "?" in uri else "?"
    return f"{uri}{delimiter}{parameter}"


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


async def _stream_buffer(buffer: bytearray) -> AsyncIterator[bytearray]:
    yield buffer


class RequestSender:
    """Send HTTP requests to a web server and convert their responses.

    Example:
        ```python
        sender = RequestSender()
        projects = await sender.get_paginated("https://omero.example.org/api/v0/m/projects/")
        await sender.close()
        ```
    """

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        user_agent: str | None = None,
    ):
        """Create the sender and its HTTP client.

        Args:
            timeout: Request timeout in seconds. Falls back to config/env.
            transport: Optional httpx transport (used by tests to fake a server)
            user_agent: User-Agent header. Falls back to config.
        """
        config = get_config()
        self.timeout = timeout if timeout is not None else config.omero.request_timeout
        self._transport = transport
        self._headers = {"User-Agent": user_agent or config.app.user_agent}
        self._http_client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=self._headers,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"RequestSender(timeout={self.timeout})"

    @property
    def cookies(self) -> httpx.Cookies:
        """Cookie jar persisted across the requests of this sender."""
        return self._http_client.cookies

    @property
    def is_closed(self) -> bool:
        return self._http_client.is_closed

    async def _send(self, method: str, uri: str, **kwargs: Any) -> httpx.Response:
        if self._http_client.is_closed:
            raise NetworkError(f"Request {method} {uri} failed: the sender is closed")
        try:
            response = await self._http_client.request(method, uri, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(f"Request {method} {uri} failed: {e}") from e

        if response.status_code != HTTP_STATUS_OK:
            raise HttpError(response.status_code, uri)
        return response

    async def get(self, uri: str) -> str:
        """Send a GET request and return the response body as text.

        Raises:
            NetworkError: If the server could not be reached
            HttpError: If the status code is not 200
        """
        logger.debug("GET %s", uri)
        response = await self._send("GET", uri)
        return response.text

    async def get_bytes(self, uri: str) -> bytes:
        logger.debug("GET (bytes) %s", uri)
        response = await self._send("GET", uri)
        return response.content

    async def get_json(self, uri: str) -> Any:
        """Send a GET request and decode the response as JSON.

        Raises:
            DecodeError: If the body is not valid JSON
        """
        text = await self.get(uri)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Response of {uri} is not valid JSON: {e}", text) from e

    async def get_json_object(self, uri: str) -> dict:
        data = await self.get_json(uri)
        if not isinstance(data, dict):
            raise DecodeError(f"Response of {uri} is not a JSON object", data)
        return data

    async def get_and_convert(self, uri: str, model: type[M]) -> M:
        """Send a GET request and validate the JSON response against a model.

        Args:
            uri: URI to request
            model: Pydantic model the response must conform to

        Returns:
            Validated model instance

        Raises:
            NetworkError: If the server could not be reached
            HttpError: If the status code is not 200
            DecodeError: If the body is not valid JSON or misses required fields
        """
        data = await self.get_json(uri)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DecodeError(
                f"Response of {uri} cannot be converted to {model.__name__}: {e}", data
            ) from e

    async def get_paginated(self, uri: str) -> list[Any]:
        """Fetch every page of a paginated JSON API list.

        The first response must contain ``meta.limit``, ``meta.totalCount``
        and a ``data`` array. Remaining pages are requested concurrently with
        ``offset=limit, 2*limit, ...`` and concatenated in offset order.

        Args:
            uri: URI of the first page

        Returns:
            Elements of every ``data`` array

        Raises:
            NetworkError: If any page could not be reached
            HttpError: If any page has a status code other than 200
            DecodeError: If a page misses the pagination fields
        """
        first_page = await self.get_json_object(uri)

        meta = first_page.get("meta")
        if not isinstance(meta, dict):
            raise DecodeError(f"'meta' object not found in response of {uri}", first_page)
        if not isinstance(first_page.get("data"), list):
            raise DecodeError(f"'data' array not found in response of {uri}", first_page)
        limit = meta.get("limit")
        total_count = meta.get("totalCount")
        if not _is_number(limit):
            raise DecodeError(f"'limit' number not found in meta of {uri}", first_page)
        if not _is_number(total_count):
            raise DecodeError(f"'totalCount' number not found in meta of {uri}", first_page)

        elements = list(first_page["data"])
        limit = int(limit)
        total_count = int(total_count)
        if limit <= 0 or total_count <= limit:
            return elements

        number_of_requests = math.ceil((total_count - limit) / limit)
        logger.debug(
            "Fetching %d more pages of %s (limit=%d, totalCount=%d)",
            number_of_requests,
            uri,
            limit,
            total_count,
        )
        pages = await asyncio.gather(
            *(
                self._get_page(_append_query(uri, f"offset={limit * (i + 1)}"))
                for i in range(number_of_requests)
            )
        )
        for page in pages:
            elements.extend(page)
        return elements

    async def _get_page(self, uri: str) -> list[Any]:
        page = await self.get_json_object(uri)
        if not isinstance(page.get("data"), list):
            raise DecodeError(f"'data' array not found in response of {uri}", page)
        return page["data"]

    def _post_headers(self, content_type: str, referer: str, token: str) -> dict:
        return {
            "Content-Type": content_type,
            "X-CSRFToken": token,
            "Referer": referer,
        }

    async def post(
        self, uri: str, body: bytes | bytearray | str, referer: str, token: str
    ) -> str:
        """Send a url-encoded POST request.

        Args:
            uri: URI to post to
            body: Url-encoded form body
            referer: Value of the Referer header
            token: CSRF token of the session

        Returns:
            Response body as text
        """
        logger.debug("POST %s (referer %s)", uri, referer)
        headers = self._post_headers("application/x-www-form-urlencoded", referer, token)
        if isinstance(body, str):
            content = body.encode("utf-8")
        elif isinstance(body, bytearray):
            # sent without copying, so wiping the buffer afterwards clears the body
            headers["Content-Length"] = str(len(body))
            content = _stream_buffer(body)
        else:
            content = body
        response = await self._send("POST", uri, content=content, headers=headers)
        return response.text

    async def post_json(self, uri: str, body: str, referer: str, token: str) -> str:
        logger.debug("POST (json) %s (referer %s)", uri, referer)
        response = await self._send(
            "POST",
            uri,
            content=body.encode("utf-8"),
            headers=self._post_headers("application/json", referer, token),
        )
        return response.text

    async def post_file(
        self,
        uri: str,
        file_name: str,
        file_content: str,
        referer: str,
        token: str,
        parameters: dict[str, str] | None = None,
    ) -> str:
        """Upload a CSV file as multipart form data.

        Args:
            uri: URI to post to
            file_name: Name of the uploaded file
            file_content: Text content of the file
            referer: Value of the Referer header
            token: CSRF token of the session
            parameters: Additional form fields

        Returns:
            Response body as text
        """
        boundary = _random_boundary()
        parts = [
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{ANNOTATION_FILE_PART_NAME}"; '
            f'filename="{file_name}"\r\n'
            "Content-Type: text/csv\r\n\r\n"
            f"{file_content}\r\n"
        ]
        for name, value in (parameters or {}).items():
            parts.append(
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            )
        parts.append(f"--{boundary}--\r\n")

        logger.debug("POST (file %s) %s (referer %s)", file_name, uri, referer)
        response = await self._send(
            "POST",
            uri,
            content="".join(parts).encode("utf-8"),
            headers=self._post_headers(
                f"multipart/form-data; boundary={boundary}", referer, token
            ),
        )
        return response.text

    async def is_link_reachable(
        self,
        uri: str,
        method: str = "GET",
        follow_redirects: bool = True,
        use_cookies: bool = True,
    ) -> bool:
        """Check whether a link answers with status 200. Never raises.

        Args:
            uri: Link to check
            method: "GET" or "OPTIONS"
            follow_redirects: Whether redirects are followed
            use_cookies: Whether the cookies of this sender are sent
        """
        if self._http_client.is_closed:
            logger.debug("Link %s not reachable: the sender is closed", uri)
            return False
        try:
            if use_cookies:
                response = await self._http_client.request(
                    method, uri, follow_redirects=follow_redirects
                )
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    follow_redirects=follow_redirects,
                    headers=self._headers,
                    transport=self._transport,
                ) as http_client:
                    response = await http_client.request(method, uri)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("Link %s not reachable: %s", uri, e)
            return False

        if response.status_code != HTTP_STATUS_OK:
            logger.debug(
                "Link %s not reachable: status code %d", uri, response.status_code
            )
            return False
        return True

    async def get_image(self, uri: str) -> Image.Image:
        """Download and decode a raster image.

        Raises:
            NetworkError: If the server could not be reached
            HttpError: If the status code is not 200
            DecodeError: If the bytes are not a recognised image format
        """
        content = await self.get_bytes(uri)
        return decode_image(content, uri)

    async def close(self) -> None:
        """Close the HTTP client. Safe to call more than once."""
        if not self._http_client.is_closed:
            await self._http_client.aclose()


def decode_image(content: bytes, source: str = "") -> Image.Image:
    """Decode raw bytes into a fully loaded Pillow image.

    Raises:
        DecodeError: If the bytes are not a recognised image format
    """
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Cannot decode image {source}: {e}", content) from e
    return image
