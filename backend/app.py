from fastapi import FastAPI

from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router
from backend.apps.emission.api import router as emission_router


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    app = FastAPI(title="Factus Emission Backend")

    app.include_router(health_router)
    app.include_router(emission_router)

    return app


# ASGI app instance
app = create_app()
