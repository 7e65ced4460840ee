import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .ai.router import router as ai_router
from .assets import router as assets_router
from .config import settings
from .dashboard import router as dashboard_router
from .database import close_db_pool, init_db_pool
from .errors import install_error_handlers
from .goals import router as goals_router
from .stock_data import router as stock_data_router


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db_pool()
    yield
    await close_db_pool()


def _cors_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]


def create_app() -> FastAPI:
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    origins = _cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    app.include_router(dashboard_router)
    app.include_router(goals_router)
    app.include_router(assets_router)
    app.include_router(stock_data_router)
    app.include_router(ai_router)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
