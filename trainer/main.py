import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from trainer.api import training, websocket
from trainer.core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Sales Trainer API",
    version="1.0.0",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# CORS origins from settings (comma-separated)
allow_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(training.router, prefix="/api/training", tags=["training"])
app.include_router(websocket.router, tags=["websocket"])


@app.get("/")
async def root():
    return {"message": "Sales Trainer API"}

@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup"""
    logger = logging.getLogger("trainer.startup")
    logger.info("Initializing sales trainer backend services...")

    from trainer.core.database import create_tables, check_connection
    if check_connection():
        # Production databases are provisioned ahead of time
        if settings.is_development:
            create_tables()
        logger.info("Database tables initialized")
    else:
        logger.error("Database connection failed; sessions will run unpersisted")

    logger.info("HTTP API endpoints available:")
    logger.info("  - /api/training - Training sessions")
    logger.info("  - /ws/training/{session_id} - Live session channel")

    logger.info("Sales trainer backend startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown"""
    logger = logging.getLogger("trainer.shutdown")
    logger.info("Shutting down sales trainer backend services...")

    from trainer.services.session_registry import shutdown_training_registry
    await shutdown_training_registry()

    from trainer.core.database import async_engine
    await async_engine.dispose()

    logger.info("Sales trainer backend shutdown complete")
