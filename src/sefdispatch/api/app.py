from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sefdispatch import __version__
from sefdispatch.api.routers.health import router as health_router
from sefdispatch.api.routers.queue import router as queue_router
from sefdispatch.api.routers.webhooks import router as webhooks_router
from sefdispatch.config import get_settings
from sefdispatch.database import init_db
from sefdispatch.exceptions import DispatchException
from sefdispatch.runtime import Dispatcher, build_dispatcher


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    app = FastAPI(title="sefdispatch", version=__version__)
    app.state.dispatcher = dispatcher
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(queue_router, prefix="/api/v1")

    @app.exception_handler(DispatchException)
    def _dispatch_error(_request: Request, exc: DispatchException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        if app.state.dispatcher is not None:
            return
        # Dev convenience: auto-create tables. Production runs alembic instead.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)
        app.state.dispatcher = build_dispatcher(settings=settings)
        if settings.EMBEDDED_WORKERS:
            app.state.dispatcher.start()
            app.state.owns_workers = True

    @app.on_event("shutdown")
    def _shutdown() -> None:  # pragma: no cover
        if getattr(app.state, "owns_workers", False):
            app.state.dispatcher.stop()

    return app


app = create_app()
