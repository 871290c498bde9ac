from __future__ import annotations

from fastapi import Depends, Request

from backend.app.core.container import AppContainer
from backend.app.services.credential_resolver import CredentialResolver


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def get_credential_resolver(container: AppContainer = Depends(get_container)) -> CredentialResolver:
    return container.credential_resolver
