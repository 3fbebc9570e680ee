import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from oralexam import __version__
from oralexam.config.feature_flags import feature_flags
from oralexam.config.settings import settings
from oralexam.coordination.gates import reset_gates
from oralexam.coordination.redis_client import close_redis
from oralexam.database import close_db, init_db
from oralexam.errors import APIError, ErrorCode, internal_error_response
from oralexam.exceptions import MalformedResponseError, OralExamException
from oralexam.rate_limit import limiter
from oralexam.routes import admin, seminars, student
from oralexam.tasks.sweep import start_sweep_task

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    sweep_task = None
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = start_sweep_task(settings.DATABASE_URL, settings.SWEEP_INTERVAL_SECONDS)

    yield

    logger.info("Shutting down application...")
    if sweep_task is not None:
        sweep_task.cancel()
    try:
        await close_db()
        await close_redis()
        reset_gates()
    except Exception as e:
        logger.error(f"Error closing connections: {str(e)}")


app = FastAPI(
    title="Oral Exam API",
    description="AI code review and voice oral examinations for programming courses",
    version=__version__,
    docs_url="/docs" if settings.is_development() else None,
    redoc_url="/redoc" if settings.is_development() else None,
    lifespan=lifespan
)

# Attach rate limiter to the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]
origins.extend(settings.ALLOWED_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "type": error.get("type")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": "Validation Error",
            "message": "Request validation failed",
            "code": ErrorCode.VALIDATION_ERROR,
            "details": {"errors": error_details}
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": "Error",
            "message": str(exc.detail),
            "code": ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_INPUT
        }
    )


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.warning(f"API error on {request.url.path}: {exc.code} - {exc.message}")
    return exc.to_response()


_DOMAIN_ERROR_CODES = {
    404: ("Not Found", ErrorCode.NOT_FOUND),
    401: ("Unauthorized", ErrorCode.WEBHOOK_SIGNATURE_INVALID),
    502: ("Provider Error", ErrorCode.PROVIDER_ERROR),
}


@app.exception_handler(OralExamException)
async def domain_exception_handler(request: Request, exc: OralExamException):
    if exc.status_code >= 500 and exc.status_code != 502:
        return internal_error_response(exc, request.url.path)

    error, code = _DOMAIN_ERROR_CODES.get(exc.status_code, ("Error", ErrorCode.INVALID_INPUT))
    if isinstance(exc, MalformedResponseError):
        code = ErrorCode.MALFORMED_RESPONSE
    if exc.status_code == 502:
        logger.error(f"Provider failure on {request.url.path}: {type(exc).__name__}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error, "message": exc.message, "code": code}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    return internal_error_response(exc, request.url.path)


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "llm_configured": bool(settings.OPENAI_API_KEY),
        "voice_configured": bool(settings.ELEVENLABS_API_KEY and settings.ELEVENLABS_AGENT_ID),
        "features": feature_flags.get_all_flags(),
        "version": __version__
    }


app.include_router(seminars.router)
app.include_router(student.router)
app.include_router(admin.router)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = settings.ENVIRONMENT == "development"

    logger.info(f"Starting server on {host}:{port} (environment: {settings.ENVIRONMENT}, reload: {reload})")

    uvicorn.run(
        "oralexam.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )
