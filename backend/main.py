import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.api.errors import RpcError, rpc_error_handler
from backend.api.routers import oauth, prices, rpc, system, telemetry
from backend.core.logging import setup_logging
from backend.middleware.timing import TimingMiddleware
from backend.services.container import Services, build_services
from charging.config import AppConfig, load_config

logger = logging.getLogger("smartcharge.main")


def create_app(
    config: Optional[AppConfig] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Factory to create the ASGI app.

    Without arguments, configuration is read from CONFIG_PATH/SECRETS_PATH
    (default config.yaml/secrets.yaml in the working directory).
    """
    if services is None:
        if config is None:
            config = load_config(
                os.environ.get("CONFIG_PATH", "config.yaml"),
                os.environ.get("SECRETS_PATH", "secrets.yaml"),
            )
        services = build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("SmartCharge server starting...")
        await services.scheduler.start()

        yield  # Server is running

        logger.info("SmartCharge server shutting down...")
        await services.aclose()

    app = FastAPI(
        title="SmartCharge",
        version=system.APP_VERSION,
        description="Price-aware EV charging decisions",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TimingMiddleware)

    app.add_exception_handler(RpcError, rpc_error_handler)

    app.include_router(system.router)
    app.include_router(telemetry.router)
    app.include_router(rpc.router)
    app.include_router(oauth.router)
    app.include_router(prices.router)

    return app


def get_app() -> FastAPI:
    """Entry point for uvicorn: ``uvicorn backend.main:get_app --factory``."""
    setup_logging()
    return create_app()
