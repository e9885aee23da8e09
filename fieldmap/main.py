from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.errors import FieldMapError, LoadTimeout, ServiceIncompatible
from .core.logging import configure_logging
from .engine.dashboard import Dashboard
from .routers import events, highlight, layers, search, timeseries


def create_app(dashboard: Dashboard | None = None) -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name)
    app.state.dashboard = dashboard or Dashboard.create()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FieldMapError)
    async def field_map_error(request: Request, exc: FieldMapError):
        status = 504 if isinstance(exc, LoadTimeout) else 502
        body = {"detail": exc.user_message, "error": type(exc).__name__}
        if isinstance(exc, ServiceIncompatible) and exc.status_code:
            body["upstream_status"] = exc.status_code
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    app.include_router(search.router)
    app.include_router(layers.router)
    app.include_router(timeseries.router)
    app.include_router(highlight.router)
    app.include_router(events.router)

    @app.get("/")
    def root():
        return {"name": settings.app_name, "env": settings.app_env, "message": "OK"}

    return app


app = create_app()
