from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

STUNNER_CONFIG_VERSION = "v1alpha1"


class StunnerAuthCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    username: str | None = None
    password: str | None = None
    secret: str | None = None


class StunnerAuthConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: str | None = None
    realm: str | None = None
    credentials: StunnerAuthCredentials = Field(default_factory=StunnerAuthCredentials)


class StunnerListener(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    public_address: str | None = None
    public_port: int | None = None
    port: int | None = None
    protocol: str | None = None


class StunnerConfigArtifact(BaseModel):
    """Parsed `stunnerd` configuration file.

    Only the sections needed to hand out credentials are modelled; everything
    else in the file (admin, static, clusters, ...) is ignored.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    version: Literal["v1alpha1"]
    auth: StunnerAuthConfig
    listeners: tuple[StunnerListener, ...] = ()

    @field_validator("auth", mode="before")
    @classmethod
    def validate_auth_present(cls, value: object) -> object:
        if not value:
            raise ValueError("auth block must be a non-empty object")
        return value

    @field_validator("listeners", mode="before")
    @classmethod
    def validate_listeners(cls, value: object) -> object:
        if value is None:
            return ()
        return value
