# marketalert/entrypoints/fastapi_app.py
from __future__ import annotations

from fastapi import FastAPI

from ..db import init_models
from ..service_layer.bootstrap import Services, build_services
from .api.routers import health, institutions, scan


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="MarketAlert - Member Property Scans")
    app.state.services = services or build_services()

    @app.on_event("startup")
    async def _startup() -> None:
        # Single place where DB tables are created in dev.
        await init_models(app.state.services.engine)

    # Routers
    app.include_router(health.router)
    app.include_router(scan.router)
    app.include_router(institutions.router)

    return app
