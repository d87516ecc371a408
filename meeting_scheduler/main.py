"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meeting_scheduler.api import chat_router
from meeting_scheduler.api.dependencies import build_integration
from meeting_scheduler.config import settings
from meeting_scheduler.db.session import init_db
from meeting_scheduler.utils.logging_utils import StructuredLogger

logger = StructuredLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.storage_backend == "sql":
        init_db()
    if getattr(app.state, "integration", None) is None:
        app.state.integration = build_integration()
    logger.info("Application started", env=settings.app_env, storage=settings.storage_backend)
    yield
    for backend in app.state.integration.ai_service.router.backends.values():
        close = getattr(backend, "aclose", None)
        if close is not None:
            await close()


def create_app(integration=None) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Conversational meeting scheduler",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.integration = integration

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "app": settings.app_name}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "meeting_scheduler.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.app_debug
    )
