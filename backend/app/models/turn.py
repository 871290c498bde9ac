from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TurnQueryOptions(BaseModel):
    """Overrides a remote caller may set; `None` means "not provided"."""

    model_config = ConfigDict(extra="ignore")

    address: str | None = None
    port: int | None = None
    protocol: str | None = None
    auth_type: str | None = None
    realm: str | None = None
    username: str | None = None
    password: str | None = None
    secret: str | None = None
    duration: int | None = None
    algorithm: str | None = None
    encoding: str | None = None
    ice_transport_policy: str | None = None
    transport_udp_enable: bool | None = None
    transport_tcp_enable: bool | None = None

    @field_validator("*", mode="before")
    @classmethod
    def empty_string_is_unset(cls, value: object) -> object:
        if value == "":
            return None
        return value


class TurnOptions(TurnQueryOptions):
    # Local callers only: reading an arbitrary path is not exposed over HTTP.
    config_file: str | None = None


class TurnCredential(BaseModel):
    username: str
    credential: str
    realm: str


class IceServerDescriptor(BaseModel):
    url: str
    username: str
    credential: str


class IceConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ice_servers: list[IceServerDescriptor] = Field(default_factory=list, alias="iceServers")
    ice_transport_policy: str = Field(alias="iceTransportPolicy")
