from __future__ import annotations

import argparse
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from backend.app.api import turn
from backend.app.core.config import Settings, get_settings
from backend.app.core.container import AppContainer
from backend.app.core.logging import configure_logging
from backend.app.services.config_source import ConfigSource
from backend.app.services.credential_resolver import CredentialResolver


def _build_container(settings: Settings) -> AppContainer:
    config_source = ConfigSource(retry_interval_seconds=settings.config_retry_interval_seconds)
    credential_resolver = CredentialResolver(config_source)

    return AppContainer(
        settings=settings,
        config_source=config_source,
        credential_resolver=credential_resolver,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.debug)

    container = _build_container(settings)
    app.state.container = container
    await container.config_source.start(settings.resolved_config_filename)
    try:
        yield
    finally:
        container.config_source.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    app.include_router(turn.router, prefix=settings.api_prefix)

    @app.get("/api/health")
    async def health() -> dict[str, str | bool | None]:
        config_source = app.state.container.config_source
        return {
            "status": "ok",
            "config_state": config_source.state.value,
            "config_file": str(config_source.path) if config_source.path is not None else None,
            "config_loaded": config_source.snapshot() is not None,
        }

    return app


app = create_app()


def run() -> None:
    parser = argparse.ArgumentParser(description="Run the STUNner auth service")
    parser.add_argument(
        "--config-file",
        default=None,
        help="Path of the stunnerd config file to watch (default: $STUNNER_CONFIG_FILENAME).",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8088)
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--reload", action=argparse.BooleanOptionalAction, default=False)
    parser.add_argument("--access-log", action=argparse.BooleanOptionalAction, default=True)
    parser.add_argument("--debug", action=argparse.BooleanOptionalAction, default=None)
    args = parser.parse_args()

    if args.config_file is not None:
        os.environ["STUNNER_CONFIG_FILENAME"] = args.config_file
    if args.debug is True:
        os.environ["STUNNER_DEBUG"] = "1"
    elif args.debug is False:
        os.environ["STUNNER_DEBUG"] = "0"

    get_settings.cache_clear()
    globals()["app"] = create_app()

    uvicorn.run(
        "backend.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        access_log=args.access_log,
    )


if __name__ == "__main__":
    run()
