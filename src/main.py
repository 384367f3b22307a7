import logging

import sentry_sdk
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import REGISTRY, generate_latest

from src.config import Config
from src.config.logging_config import configure_logging
from src.routes import admin, generate, health, usage
from src.services.startup import AppServices, build_services, lifespan
from src.utils.error_handlers import register_exception_handlers

# Configure logging with Loki integration
configure_logging()
logger = logging.getLogger(__name__)

if Config.SENTRY_ENABLED and Config.SENTRY_DSN:

    def sentry_traces_sampler(sampling_context):
        """Skip probes, sample generation more than the rest."""
        asgi_scope = sampling_context.get("asgi_scope") or {}
        endpoint = asgi_scope.get("path", "")
        if endpoint in ("/health", "/metrics"):
            return 0.0
        if endpoint == "/api/generate":
            return Config.SENTRY_TRACES_SAMPLE_RATE * 2
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(f"✅ Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("⏭️  Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app(services: AppServices | None = None) -> FastAPI:
    app = FastAPI(
        title="Swap Studio API",
        description="Photo compositing API with tiered usage limits",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(generate.router)
    app.include_router(usage.router)
    app.include_router(admin.router)

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

    logger.info("  [OK] Routes and Prometheus metrics endpoint registered")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Swap Studio API server...")
    uvicorn.run("src.main:app", host="0.0.0.0", port=Config.PORT)
