from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from backend.app.api.deps import get_credential_resolver
from backend.app.models.turn import IceConfiguration, TurnCredential, TurnQueryOptions
from backend.app.services.credential_resolver import CredentialResolver

router = APIRouter(tags=["turn"])


@router.get("/ice-config", response_model=IceConfiguration, response_model_by_alias=True)
async def get_ice_config(
    options: TurnQueryOptions = Depends(),
    resolver: CredentialResolver = Depends(get_credential_resolver),
) -> IceConfiguration:
    ice_config = resolver.get_ice_config(options)
    if ice_config is None:
        raise HTTPException(status_code=503, detail="ICE configuration is not available yet.")
    return ice_config


@router.get("/turn-credentials", response_model=TurnCredential)
async def get_turn_credentials(
    options: TurnQueryOptions = Depends(),
    resolver: CredentialResolver = Depends(get_credential_resolver),
) -> TurnCredential:
    credential = resolver.get_credential(options)
    if credential is None:
        raise HTTPException(status_code=503, detail="TURN credentials are not available yet.")
    return credential
