"""Server information published by the JSON API and the login response."""

from __future__ import annotations

from numbers import Real
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from utils.exceptions import ProtocolError


class SupportedVersion(BaseModel):
    """One entry of the ``/api/`` supported versions list."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    version: str | None = None
    url: str | None = Field(None, alias="url:base")

    @property
    def is_valid(self) -> bool:
        return bool(self.version) and bool(self.url)


class Links(BaseModel):
    """Endpoint URLs published by one version of the JSON API."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    experimenters: str = Field(..., alias="url:experimenters")
    groups: str = Field(..., alias="url:experimentergroups")
    projects: str = Field(..., alias="url:projects")
    datasets: str = Field(..., alias="url:datasets")
    images: str = Field(..., alias="url:images")
    screens: str = Field(..., alias="url:screens")
    plates: str = Field(..., alias="url:plates")
    token: str = Field(..., alias="url:token")
    servers: str = Field(..., alias="url:servers")
    login: str = Field(..., alias="url:login")


class ServerInfo(BaseModel):
    """Identity of the OMERO server behind the web server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    host: str = Field(..., description="Address of the OMERO server")
    port: int = Field(..., description="Port of the OMERO server")
    id: int = Field(..., description="ID of the server as seen by the web server")


def _require_number(event_context: dict, key: str) -> int:
    value = event_context.get(key)
    if not isinstance(value, Real) or isinstance(value, bool):
        raise ProtocolError(f"'{key}' number not found in {event_context}")
    return int(value)


class LoginResponse(BaseModel):
    """Session established by a successful login."""

    model_config = ConfigDict(frozen=True)

    group_id: int
    user_id: int
    session_uuid: str
    is_admin: bool
    owned_group_ids: tuple[int, ...] = ()

    @classmethod
    def from_json(cls, response: Any) -> LoginResponse:
        """Parse the ``eventContext`` object of a login response.

        Raises:
            ProtocolError: If a required field is missing or has the wrong type
        """
        if not isinstance(response, dict) or not isinstance(
            response.get("eventContext"), dict
        ):
            raise ProtocolError(f"'eventContext' object not found in {response}")
        event_context = response["eventContext"]

        session_uuid = event_context.get("sessionUuid")
        if not isinstance(session_uuid, str):
            raise ProtocolError(f"'sessionUuid' text not found in {event_context}")

        is_admin = event_context.get("isAdmin")
        if not isinstance(is_admin, bool):
            raise ProtocolError(f"'isAdmin' boolean not found in {event_context}")

        leader_of_groups = event_context.get("leaderOfGroups")
        if not isinstance(leader_of_groups, list) or not all(
            isinstance(group_id, Real) and not isinstance(group_id, bool)
            for group_id in leader_of_groups
        ):
            raise ProtocolError(
                f"'leaderOfGroups' number array not found in {event_context}"
            )

        return cls(
            group_id=_require_number(event_context, "groupId"),
            user_id=_require_number(event_context, "userId"),
            session_uuid=session_uuid,
            is_admin=is_admin,
            owned_group_ids=tuple(int(group_id) for group_id in leader_of_groups),
        )
