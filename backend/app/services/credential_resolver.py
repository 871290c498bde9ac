from __future__ import annotations

import base64
import hmac
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel

from backend.app.core.config import TURN_DEFAULTS, Settings
from backend.app.models.stunner_config import StunnerConfigArtifact, StunnerListener
from backend.app.models.turn import IceConfiguration, IceServerDescriptor, TurnCredential, TurnOptions
from backend.app.services.config_source import ConfigSource, ConfigSourceError, read_config_artifact

logger = logging.getLogger(__name__)

AUTH_TYPE_PLAINTEXT = "plaintext"
AUTH_TYPE_LONGTERM = "longterm"

DIGEST_ENCODERS: dict[str, Callable[[bytes], str]] = {
    "base64": lambda digest: base64.b64encode(digest).decode("ascii"),
    "base64url": lambda digest: base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii"),
    "hex": lambda digest: digest.hex(),
    "latin1": lambda digest: digest.decode("latin-1"),
}


class CredentialResolutionError(Exception):
    pass


class InvalidAuthModeError(CredentialResolutionError):
    def __init__(self, auth_type: str):
        self.auth_type = auth_type
        super().__init__(f"invalid authentication type: {auth_type!r}")


class MissingAddressError(CredentialResolutionError):
    pass


class UnsupportedDigestError(CredentialResolutionError):
    pass


class OptionSource(StrEnum):
    OPTION = "option"
    ARTIFACT = "artifact"
    ENVIRONMENT = "environment"
    DEFAULT = "default"


OptionLayer = tuple[OptionSource, Any]


def is_present(value: object) -> bool:
    return value is not None and value != ""


def first_present(*layers: OptionLayer) -> tuple[Any, OptionSource | None]:
    """Return the first present value, highest precedence first, with its layer.

    `False` and `0` count as configured; only `None` and `""` fall through.
    """
    for source, value in layers:
        if is_present(value):
            return value, source
    return None, None


@dataclass(slots=True)
class ResolvedOptions:
    auth_type: str
    realm: str
    username: str
    password: str
    secret: str
    duration: int
    algorithm: str
    encoding: str
    ice_transport_policy: str
    address: str | None
    port: int
    protocol: str
    transport_udp_enable: bool
    transport_tcp_enable: bool
    sources: dict[str, OptionSource | None] = field(default_factory=dict)


def longterm_credential_for_timestamp(
    timestamp: int,
    secret: str,
    realm: str,
    algorithm: str = "sha1",
    encoding: str = "base64",
) -> TurnCredential:
    """Derive a TURN long-term credential that expires at `timestamp`.

    Matches pion/turn's GenerateLongTermCredentials: the username is the
    decimal timestamp and the password is HMAC(secret, username).
    """
    encoder = DIGEST_ENCODERS.get(encoding.lower())
    if encoder is None:
        raise UnsupportedDigestError(f"unsupported credential encoding: {encoding!r}")

    username = str(timestamp)
    try:
        digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), algorithm).digest()
    except ValueError as exc:
        raise UnsupportedDigestError(f"unsupported HMAC algorithm: {algorithm!r}") from exc

    return TurnCredential(username=username, credential=encoder(digest), realm=realm)


def _coerce_options(options: TurnOptions | Mapping[str, Any] | None) -> TurnOptions:
    if options is None:
        return TurnOptions()
    if isinstance(options, TurnOptions):
        return options
    if isinstance(options, BaseModel):
        return TurnOptions.model_validate(options.model_dump())
    return TurnOptions.model_validate(dict(options))


def _turn_url(address: str | None, port: int, protocol: str) -> str:
    return f"turn:{address or ''}:{port}?transport={protocol.lower()}"


class CredentialResolver:
    """Manufactures TURN credentials and ICE server lists.

    Values are taken from, in order: explicit options, the loaded STUNner
    config file, `STUNNER_*` environment variables and built-in defaults.
    Failures are logged and reported as `None`; nothing here raises to callers.
    """

    def __init__(
        self,
        config_source: ConfigSource | None = None,
        *,
        environment: Callable[[], Settings] = Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config_source = config_source
        self._environment = environment
        self._clock = clock

    def get_credential(self, options: TurnOptions | Mapping[str, Any] | None = None) -> TurnCredential | None:
        opts = _coerce_options(options)
        return self.resolve_credential(opts, self._artifact_for(opts))

    def get_ice_config(self, options: TurnOptions | Mapping[str, Any] | None = None) -> IceConfiguration | None:
        opts = _coerce_options(options)
        return self.resolve_endpoints(opts, self._artifact_for(opts))

    def resolve_options(
        self,
        options: TurnOptions | Mapping[str, Any] | None,
        artifact: StunnerConfigArtifact | None,
        listener: StunnerListener | None = None,
        environment: Settings | None = None,
    ) -> ResolvedOptions:
        opts = _coerce_options(options)
        env = environment if environment is not None else self._environment()
        auth = artifact.auth if artifact is not None else None
        credentials = auth.credentials if auth is not None else None

        def artifact_value(value_of: Callable[[], Any]) -> Any:
            return value_of() if auth is not None else None

        def listener_value(value_of: Callable[[StunnerListener], Any]) -> Any:
            return value_of(listener) if listener is not None else None

        cascade: dict[str, tuple[OptionLayer, ...]] = {
            "auth_type": (
                (OptionSource.OPTION, opts.auth_type),
                (OptionSource.ARTIFACT, artifact_value(lambda: auth.type)),
                (OptionSource.ENVIRONMENT, env.auth_type),
            ),
            "realm": (
                (OptionSource.OPTION, opts.realm),
                (OptionSource.ARTIFACT, artifact_value(lambda: auth.realm)),
                (OptionSource.ENVIRONMENT, env.realm),
            ),
            "username": (
                (OptionSource.OPTION, opts.username),
                (OptionSource.ARTIFACT, artifact_value(lambda: credentials.username)),
                (OptionSource.ENVIRONMENT, env.username),
            ),
            "password": (
                (OptionSource.OPTION, opts.password),
                (OptionSource.ARTIFACT, artifact_value(lambda: credentials.password)),
                (OptionSource.ENVIRONMENT, env.password),
            ),
            "secret": (
                (OptionSource.OPTION, opts.secret),
                (OptionSource.ARTIFACT, artifact_value(lambda: credentials.secret)),
                (OptionSource.ENVIRONMENT, env.shared_secret),
            ),
            "duration": ((OptionSource.OPTION, opts.duration), (OptionSource.ENVIRONMENT, env.duration)),
            "algorithm": ((OptionSource.OPTION, opts.algorithm), (OptionSource.ENVIRONMENT, env.algorithm)),
            "encoding": ((OptionSource.OPTION, opts.encoding), (OptionSource.ENVIRONMENT, env.encoding)),
            "ice_transport_policy": (
                (OptionSource.OPTION, opts.ice_transport_policy),
                (OptionSource.ENVIRONMENT, env.ice_transport_policy),
            ),
            "address": (
                (OptionSource.OPTION, opts.address),
                (OptionSource.ARTIFACT, listener_value(lambda item: item.public_address)),
                (OptionSource.ENVIRONMENT, env.public_addr),
            ),
            "port": (
                (OptionSource.OPTION, opts.port),
                (OptionSource.ARTIFACT, listener_value(lambda item: item.public_port)),
                (OptionSource.ARTIFACT, listener_value(lambda item: item.port)),
                (OptionSource.ENVIRONMENT, env.public_port),
            ),
            "protocol": (
                (OptionSource.OPTION, opts.protocol),
                (OptionSource.ARTIFACT, listener_value(lambda item: item.protocol)),
                (OptionSource.ENVIRONMENT, env.protocol),
            ),
            "transport_udp_enable": (
                (OptionSource.OPTION, opts.transport_udp_enable),
                (OptionSource.ENVIRONMENT, env.transport_udp_enable),
            ),
            "transport_tcp_enable": (
                (OptionSource.OPTION, opts.transport_tcp_enable),
                (OptionSource.ENVIRONMENT, env.transport_tcp_enable),
            ),
        }

        values: dict[str, Any] = {}
        sources: dict[str, OptionSource | None] = {}
        for name, layers in cascade.items():
            if name in TURN_DEFAULTS:
                layers = (*layers, (OptionSource.DEFAULT, TURN_DEFAULTS[name]))
            values[name], sources[name] = first_present(*layers)

        return ResolvedOptions(**values, sources=sources)

    def resolve_credential(
        self,
        options: TurnOptions | Mapping[str, Any] | None,
        artifact: StunnerConfigArtifact | None,
    ) -> TurnCredential | None:
        resolved = self.resolve_options(options, artifact)
        try:
            return self._derive_credential(resolved)
        except CredentialResolutionError as exc:
            logger.error("Could not generate TURN credentials: %s", exc)
            return None

    def resolve_endpoints(
        self,
        options: TurnOptions | Mapping[str, Any] | None,
        artifact: StunnerConfigArtifact | None,
    ) -> IceConfiguration | None:
        opts = _coerce_options(options)
        env = self._environment()
        resolved = self.resolve_options(opts, artifact, environment=env)

        try:
            if artifact is not None:
                ice_servers = self._config_endpoints(opts, artifact, resolved, env)
            else:
                ice_servers = self._fallback_endpoints(resolved)
        except CredentialResolutionError as exc:
            logger.error("Could not generate ICE configuration: %s", exc)
            return None

        if ice_servers is None:
            return None
        return IceConfiguration(ice_servers=ice_servers, ice_transport_policy=resolved.ice_transport_policy)

    def _artifact_for(self, opts: TurnOptions) -> StunnerConfigArtifact | None:
        """The watched snapshot, or a one-off read when `config_file` names another file."""
        source = self._config_source
        if opts.config_file:
            requested = Path(opts.config_file)
            watched = source.path if source is not None else None
            if watched is None or requested.resolve() != watched.resolve():
                return self._read_artifact(requested)
        if source is None:
            return None
        return source.snapshot()

    def _read_artifact(self, path: Path) -> StunnerConfigArtifact | None:
        try:
            return read_config_artifact(path)
        except (OSError, ConfigSourceError) as exc:
            logger.warning("Could not read STUNner config file '%s', using fallback configuration: %s", path, exc)
            return None

    def _derive_credential(self, resolved: ResolvedOptions) -> TurnCredential:
        auth_type = str(resolved.auth_type).lower()
        if auth_type == AUTH_TYPE_PLAINTEXT:
            return TurnCredential(username=resolved.username, credential=resolved.password, realm=resolved.realm)
        if auth_type == AUTH_TYPE_LONGTERM:
            expiry = int(self._clock()) + int(resolved.duration)
            return longterm_credential_for_timestamp(
                expiry,
                resolved.secret,
                resolved.realm,
                algorithm=resolved.algorithm,
                encoding=resolved.encoding,
            )
        raise InvalidAuthModeError(resolved.auth_type)

    def _config_endpoints(
        self,
        opts: TurnOptions,
        artifact: StunnerConfigArtifact,
        resolved: ResolvedOptions,
        env: Settings,
    ) -> list[IceServerDescriptor] | None:
        if not artifact.listeners:
            logger.error("STUNner config file defines no listeners, cannot generate ICE configuration")
            return None

        credential = self._derive_credential(resolved)
        ice_servers: list[IceServerDescriptor] = []
        for index, listener in enumerate(artifact.listeners):
            endpoint = self.resolve_options(opts, artifact, listener=listener, environment=env)
            if not endpoint.address:
                logger.error(
                    "No public address for STUNner listener #%d: ICE configuration will be invalid",
                    index,
                )
            ice_servers.append(
                IceServerDescriptor(
                    url=_turn_url(endpoint.address, endpoint.port, endpoint.protocol),
                    username=credential.username,
                    credential=credential.credential,
                )
            )
        return ice_servers

    def _fallback_endpoints(self, resolved: ResolvedOptions) -> list[IceServerDescriptor]:
        if not resolved.address:
            raise MissingAddressError(
                "no public address, set STUNNER_PUBLIC_ADDR or pass the address as an option"
            )

        credential = self._derive_credential(resolved)
        protocols = [
            protocol
            for protocol, enabled in (("udp", resolved.transport_udp_enable), ("tcp", resolved.transport_tcp_enable))
            if enabled
        ]
        return [
            IceServerDescriptor(
                url=_turn_url(resolved.address, resolved.port, protocol),
                username=credential.username,
                credential=credential.credential,
            )
            for protocol in protocols
        ]
