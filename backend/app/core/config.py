from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STUNNER_CONFIG_FILENAME = "/etc/stunnerd/stunnerd.conf"

# Built-in defaults, the last layer of the option cascade. The public address
# deliberately has no entry: there is no safe address to advertise.
TURN_DEFAULTS: dict[str, object] = {
    "port": 3478,
    "protocol": "UDP",
    "auth_type": "plaintext",
    "realm": "stunner.l7mp.io",
    "username": "user",
    "password": "pass",
    "secret": "my-secret",
    "duration": 24 * 60 * 60,
    "algorithm": "sha1",
    "encoding": "base64",
    "ice_transport_policy": "relay",
    "transport_udp_enable": True,
    "transport_tcp_enable": False,
}


def parse_env_flag(value: object) -> object:
    if isinstance(value, str):
        # "0" and an explicitly empty variable both disable the transport.
        return value not in ("", "0")
    return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STUNNER_", extra="ignore")

    app_name: str = "STUNner Auth Service"
    app_version: str = "0.1.0"
    debug: bool = False
    api_prefix: str = "/api"
    config_retry_interval_seconds: float = 0.5

    # Environment layer of the TURN option cascade; None means unset.
    public_addr: str | None = None
    public_port: int | None = None
    protocol: str | None = None
    auth_type: str | None = None
    realm: str | None = None
    username: str | None = None
    password: str | None = None
    shared_secret: str | None = None
    duration: int | None = None
    algorithm: str | None = None
    encoding: str | None = None
    ice_transport_policy: str | None = None
    transport_udp_enable: bool | None = None
    transport_tcp_enable: bool | None = None
    config_filename: str | None = None

    @field_validator(
        "public_addr",
        "public_port",
        "protocol",
        "auth_type",
        "realm",
        "username",
        "password",
        "shared_secret",
        "duration",
        "algorithm",
        "encoding",
        "ice_transport_policy",
        "config_filename",
        mode="before",
    )
    @classmethod
    def empty_string_is_unset(cls, value: object) -> object:
        if value == "":
            return None
        return value

    @field_validator("transport_udp_enable", "transport_tcp_enable", mode="before")
    @classmethod
    def validate_transport_flag(cls, value: object) -> object:
        return parse_env_flag(value)

    @property
    def resolved_config_filename(self) -> str:
        return self.config_filename or STUNNER_CONFIG_FILENAME


@lru_cache
def get_settings() -> Settings:
    return Settings()
