"""adlayer FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api.routes import router as api_router
from .services import AdLayerServices, open_services


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed requests as 400 rather than FastAPI's default 422."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app(services: Optional[AdLayerServices] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        services: Pre-built services; when omitted they are opened from the
            environment for the lifetime of the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return
        async with open_services() as opened:
            app.state.services = opened
            yield

    app = FastAPI(
        title="adlayer API",
        version="0.1.0",
        description="Resilient Meta Ads data acquisition with cache/snapshot fallback",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(api_router)

    return app


app = create_app()
