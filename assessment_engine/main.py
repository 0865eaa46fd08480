"""
Assessment Session Engine API.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from assessment_engine.core.config import settings
from assessment_engine.core.database import init_db
from assessment_engine.core.errors import AssessmentError
from assessment_engine.api.auth import router as auth_router
from assessment_engine.api.author import router as author_router
from assessment_engine.api.assessments import router as assessments_router
from assessment_engine.api.sessions import router as sessions_router
from assessment_engine.api.analytics import router as analytics_router
from assessment_engine.api.admin import router as admin_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    init_db()
    logger.info("Database initialized")
    yield
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)
app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

prefix = settings.API_V1_PREFIX
app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
app.include_router(author_router, prefix=f"{prefix}/author", tags=["authoring"])
app.include_router(assessments_router, prefix=f"{prefix}/assessments", tags=["assessments"])
app.include_router(sessions_router, prefix=f"{prefix}/sessions", tags=["sessions"])
app.include_router(analytics_router, prefix=f"{prefix}/analytics", tags=["analytics"])
app.include_router(admin_router, prefix=f"{prefix}/admin", tags=["admin"])


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
    """Engine failures carry their own status and reason."""
    return JSONResponse(status_code=exc.status_code, content={"error": jsonable_encoder(exc.to_dict())})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "type": "http_error",
                "status_code": exc.status_code
            }
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation error",
                "type": "validation",
                "reason": "invalid_request",
                "details": jsonable_encoder(exc.errors())
            }
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    message = "An internal error occurred" if settings.is_production() else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": message, "type": "internal_error"}}
    )


@app.get("/health")
def health(): return {"status": "ok", "version": settings.APP_VERSION}
