import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.core.config import get_settings
from marketplace.core.database import Base, SessionLocal, engine
from marketplace.core.logging_setup import configure_logging
from marketplace.core.startup_checks import ensure_migrations_applied, validate_database_environment
from marketplace.middleware.observability import ObservabilityMiddleware
import marketplace.models  # garante que os models são importados antes do create_all
import marketplace.services.event_handlers  # registra handlers do event bus

from marketplace.routers.internal_metrics import router as internal_metrics_router
from marketplace.routers.orders import router as orders_router
from marketplace.routers.points import router as points_router
from marketplace.routers.settlements import router as settlements_router
from marketplace.services.weekly_period import WeeklyPeriodManager

settings = get_settings()
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    yield


app = FastAPI(
    title="Marketplace Settlement API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)


def _open_first_period() -> None:
    if not settings.auto_open_period:
        logger.info("%s automatic period opening disabled", STARTUP_PREFIX)
        return
    db = SessionLocal()
    try:
        result = WeeklyPeriodManager(db, settings=settings).ensure_active_period()
        if result.ok:
            logger.info("%s active period %s", STARTUP_PREFIX, result.value.label)
        else:
            logger.warning("%s no active period: %s", STARTUP_PREFIX, result.error.message)
    finally:
        db.close()


def _startup_tasks() -> None:
    try:
        validate_database_environment(settings)
        # Cria tabelas (dev/test em SQLite). Em produção, use migrations.
        if settings.database_url.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        ensure_migrations_applied(settings=settings, engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        _open_first_period()
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


# Routers
app.include_router(orders_router)
app.include_router(points_router)
app.include_router(settlements_router)
app.include_router(internal_metrics_router)


@app.get("/health")
def health():
    return {"status": "ok", "env": settings.env_normalized}
