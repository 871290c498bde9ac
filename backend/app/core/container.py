from __future__ import annotations

from dataclasses import dataclass

from backend.app.core.config import Settings
from backend.app.services.config_source import ConfigSource
from backend.app.services.credential_resolver import CredentialResolver


@dataclass(slots=True)
class AppContainer:
    settings: Settings
    config_source: ConfigSource
    credential_resolver: CredentialResolver
