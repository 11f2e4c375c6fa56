"""
Deploy Guard - deployment safety control loop HTTP service
"""
from fastapi import FastAPI, Request, status, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Dict, Any, Tuple
from datetime import datetime, timezone
from contextlib import asynccontextmanager
import json

# Prometheus metrics
from prometheus_client import CONTENT_TYPE_LATEST

# Internal imports
from config import settings
from logger import get_logger
from metrics import get_metrics
from middleware import DeploymentMonitoringMiddleware
from deployment.admin import DeploymentAdmin
from deployment.system import DeploymentSafetySystem

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    environment: str
    services: Dict[str, str]


def create_error_response(status_code: int, error: str) -> JSONResponse:
    """Create standardized error response"""
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _respond(result: Tuple[int, Dict[str, Any]]) -> JSONResponse:
    status_code, body = result
    return JSONResponse(status_code=status_code, content=body)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def create_app(system: DeploymentSafetySystem = None) -> FastAPI:
    """
    Build the FastAPI application around a DeploymentSafetySystem

    Args:
        system: Pre-built system (tests); built from settings when omitted
    """
    system = system or DeploymentSafetySystem(settings)
    admin = DeploymentAdmin(system)
    cfg = system.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start and stop the control loop with the application"""
        try:
            await system.start()
            logger.info(f"Application {cfg.app_name} v{cfg.version} started in {cfg.environment} mode")
        except Exception as e:
            logger.critical(f"Startup failed: {e}")
            raise

        yield

        logger.info("Application shutting down gracefully...")
        try:
            await system.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down deployment safety system: {e}")
        logger.info("Shutdown complete")

    app = FastAPI(
        title=cfg.app_name,
        version=cfg.version,
        lifespan=lifespan,
        docs_url="/api/docs" if cfg.debug else None,
        redoc_url="/api/redoc" if cfg.debug else None,
        openapi_url="/openapi.json" if cfg.debug else None
    )
    app.state.system = system

    app.add_middleware(
        DeploymentMonitoringMiddleware,
        system=system,
        exposed_flags=cfg.exposed_flags,
        exclude_paths=["/metrics"]
    )

    # API Routes
    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint with control loop status"""
        services = {
            "scheduler": "running" if system.is_running else "stopped",
            "health_checks": system.aggregator.get_health_status()["overall_status"],
        }

        overall_status = "healthy"
        if services["scheduler"] == "stopped" or services["health_checks"] == "unhealthy":
            overall_status = "unhealthy"
        elif services["health_checks"] == "degraded":
            overall_status = "degraded"

        return HealthResponse(
            status=overall_status,
            version=cfg.version,
            environment=cfg.environment,
            timestamp=datetime.now(timezone.utc).isoformat(),
            services=services
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics endpoint"""
        if not cfg.enable_metrics:
            return create_error_response(status.HTTP_404_NOT_FOUND, "Metrics disabled")
        return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)

    @app.put("/api/deployment/feature-flags", tags=["Deployment"])
    async def update_feature_flag(request: Request):
        """Set a flag's rollout percentage"""
        return _respond(admin.update_feature_flag(await _json_body(request)))

    @app.post("/api/deployment/feature-flags/gradual-rollout", tags=["Deployment"])
    async def start_gradual_rollout(request: Request):
        """Start the configured gradual rollout plan of a flag"""
        return _respond(admin.start_gradual_rollout(await _json_body(request)))

    @app.post("/api/deployment/rollback", tags=["Deployment"])
    async def trigger_rollback(request: Request):
        """Manual emergency rollback"""
        return _respond(await admin.trigger_rollback(await _json_body(request)))

    @app.get("/api/deployment/monitoring", tags=["Deployment"])
    async def monitoring():
        """Dashboard snapshot"""
        return _respond(admin.monitoring())

    @app.post("/api/deployment/web-vitals", tags=["Deployment"])
    async def web_vitals(request: Request):
        """Web vitals reported by the client tier"""
        return _respond(admin.record_web_vitals(await _json_body(request)))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.warning(f"Validation error in request {request_id}: {str(exc)}")
        return create_error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(f"Unhandled exception in request {request_id}: {str(exc)}",
                     exc_info=cfg.debug)
        return create_error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(exc) if cfg.debug else "An unexpected error occurred"
        )

    return app


if __name__ == "__main__":
    import uvicorn

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["default"],
        },
    }

    uvicorn.run(
        "app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=log_config,
        reload=(settings.environment == "development"),
    )
