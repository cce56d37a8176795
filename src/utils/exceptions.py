"""Custom exception hierarchy for the OMERO web client.

Provides structured exception classes for the failure modes of the client:
transport, HTTP status, payload decoding, server protocol and caller misuse.
"""

from __future__ import annotations

from typing import Any


class OmeroClientError(Exception):
    """Base exception for all OMERO web client errors."""

    pass


class ConfigurationError(OmeroClientError):
    """Exception raised for configuration-related errors."""

    pass


class NetworkError(OmeroClientError):
    """Exception raised when the server could not be reached (connection, timeout)."""

    pass


class HttpError(OmeroClientError):
    """Exception raised when the server answered with an unexpected status code."""

    def __init__(self, status: int, uri: str, message: str | None = None):
        self.status = status
        self.uri = uri
        super().__init__(message or f"Unexpected status code {status} for {uri}")


class DecodeError(OmeroClientError):
    """Exception raised for malformed or incomplete payloads.

    The offending raw value is always kept in ``raw`` for diagnostics.
    """

    def __init__(self, message: str, raw: Any = None):
        self.raw = raw
        super().__init__(message)


class ProtocolError(OmeroClientError):
    """Exception raised when the server does not publish an expected capability or field."""

    pass


class InvalidArgument(OmeroClientError, ValueError):
    """Exception raised when a caller misuses the API."""

    pass
