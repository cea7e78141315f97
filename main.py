import logging
import os
from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from core.celery import celery_app
from core.config import settings
from core.db import Base, engine
from core.errors import AppError, app_error_handler
from core.logging import configure_logging
import models  # noqa: F401  registers every table on Base.metadata
from routes.books import router as books_router
from routes.library import router as library_router
from routes.orders import router as orders_router
from routes.payments import router as payments_router
from routes.vouchers import router as vouchers_router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["components"]["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"BearerAuth": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"detail": "Internal server error", "code": "INTERNAL_ERROR"}
    if settings.DEBUG:
        body["error"] = repr(exc)
    return JSONResponse(status_code=500, content=body)


app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# Ensure tables exist (for dev/test; in prod use Alembic)
Base.metadata.create_all(bind=engine)

app.include_router(orders_router)
app.include_router(vouchers_router)
app.include_router(payments_router)
app.include_router(library_router)
app.include_router(books_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


@app.get("/celery-health")
async def celery_health_check():
    """Check Celery worker status"""
    try:
        inspect = celery_app.control.inspect(timeout=1.0)
        stats = inspect.stats()
        if stats:
            return {"status": "healthy", "workers": len(stats)}
        else:
            return {"status": "no_workers", "message": "No Celery workers running"}
    except Exception as e:
        logger.warning("Celery health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
