"""
API Application Entry Point

Defines the main FastAPI application with middleware, route
configuration, and pipeline lifecycle management.

Design Considerations:
- The application refuses to start without a valid token encryption key
- The pipeline is built at startup and its timers are cancelled at shutdown
- Structured route organization
"""

import logging
import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.config import get_settings, EnvironmentType
from api.services import pipeline_service
from api.utils.error_handlers import add_exception_handlers
from api.routes import webhooks, subscriptions, processing
from src.storage.encryption import validate_encryption_config

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("api")


# Create application
def create_application() -> FastAPI:
    """
    Create and configure FastAPI application instance.

    Returns:
        Configured FastAPI application

    Raises:
        ValidationError: If settings are invalid, including a missing
            TOKEN_ENCRYPTION_KEY
    """
    settings = get_settings()
    logging.getLogger().setLevel(getattr(logging, settings.LOG_LEVEL, logging.INFO))

    # Create application with configuration
    app = FastAPI(
        title=settings.API_TITLE,
        description=settings.API_DESCRIPTION,
        version=settings.API_VERSION,
        docs_url="/docs" if settings.ENVIRONMENT != EnvironmentType.PRODUCTION else None,
        redoc_url="/redoc" if settings.ENVIRONMENT != EnvironmentType.PRODUCTION else None,
        debug=settings.DEBUG
    )
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=settings.CORS_METHODS,
        allow_headers=["*"],
    )

    # Add exception handlers
    add_exception_handlers(app)

    # Include routers
    app.include_router(webhooks.router)
    app.include_router(subscriptions.router)
    app.include_router(processing.router)

    # Add startup and shutdown events
    @app.on_event("startup")
    async def startup_event():
        """Validate encryption, build the pipeline and start the sweep loop."""
        logger.info("API service starting up")
        validate_encryption_config()

        pipeline = pipeline_service.current_pipeline()
        if pipeline is None:
            pipeline = pipeline_service.build_pipeline(settings)
            pipeline_service.set_pipeline(pipeline)
        pipeline.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweep loop and cancel pending processing timers."""
        logger.info("API service shutting down")
        pipeline = pipeline_service.current_pipeline()
        if pipeline is not None:
            await pipeline.shutdown()
            pipeline_service.set_pipeline(None)

    logger.info(f"Application initialized in {settings.ENVIRONMENT.value} environment")
    return app


# Create application instance
app = create_application()


# Simple health check endpoint
@app.get("/health", tags=["Monitoring"])
async def health_check(request: Request):
    """API health check endpoint."""
    return {"status": "healthy", "environment": request.app.state.settings.ENVIRONMENT.value}
