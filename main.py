"""Main FastAPI application"""
import os
import logging
import logging.config
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from motor.motor_asyncio import AsyncIOMotorClient
from redis.asyncio import Redis
from dotenv import load_dotenv
from routes import router as api_router
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi.errors import RateLimitExceeded

from utils.api_response import api_response
from utils.limiter import limiter

# --- Unified Logging Configuration with Rich ---
LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(name)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "default": {
            "class": "rich.logging.RichHandler",
            "formatter": "default",
            "level": "DEBUG",
            "rich_tracebacks": True,
            "show_time": True,
            "show_path": False,
            "log_time_format": "%Y-%m-%d %H:%M:%S",
            "markup": True
        },
    },
    "loggers": {
        "uvicorn": {
             "handlers": ["default"],
             "level": "INFO",
             "propagate": False,
        },
        "uvicorn.error": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.access": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "": { # Root logger for our application
            "handlers": ["default"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

load_dotenv()

MONGODB_URI = os.getenv("MONGODB_URI")
DB_NAME = os.getenv("DB_NAME", "expense_tracker")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
PORT = int(os.getenv("PORT", "8000"))
MAX_UPLOAD_SIZE = 1 * 1024 * 1024  # 1MB limit
UPLOAD_ENDPOINT_PATH = "/api/expenses/bulk-upload"

if not MONGODB_URI:
    logger.error("MONGODB_URI environment variable not set! Database connection will fail.")

# Application state to hold the database client, collection and cache client
app_state = {}

# --- Middleware for Upload Size Limit ---
class LimitUploadSizeMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == UPLOAD_ENDPOINT_PATH:
            content_length_header = request.headers.get("content-length")
            if content_length_header:
                try:
                    content_length = int(content_length_header)
                    if content_length > MAX_UPLOAD_SIZE:
                        logger.warning(f"Upload rejected: File size {content_length} exceeds limit {MAX_UPLOAD_SIZE}.")
                        return api_response(413, None, f"Maximum file upload size limit ({MAX_UPLOAD_SIZE / (1024*1024):.1f} MB) exceeded.")
                except ValueError:
                    logger.warning("Upload rejected: Invalid Content-Length header.")
                    return api_response(400, None, "Invalid Content-Length header.")

        response = await call_next(request)
        return response

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Connect to MongoDB
    logger.info(f"Connecting to MongoDB at {MONGODB_URI}...")
    try:
        app_state["db_client"] = AsyncIOMotorClient(MONGODB_URI)
        app_state["db"] = app_state["db_client"][DB_NAME]
        app_state["expenses_collection"] = app_state["db"].get_collection("expenses")
        await app_state["db_client"].admin.command('ping')
        logger.info(f"Successfully connected to MongoDB database: {DB_NAME}")
    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {e}")
        app_state["db_client"] = None
        app_state["db"] = None
        app_state["expenses_collection"] = None

    # Startup: Connect to Redis. Listing keeps working without it, uncached.
    logger.info(f"Connecting to Redis at {REDIS_URL}...")
    try:
        app_state["cache"] = Redis.from_url(REDIS_URL, decode_responses=True)
        await app_state["cache"].ping()
        logger.info("Redis ping successful.")
    except Exception as e:
        logger.warning(f"Redis unavailable, expense listings will not be cached: {e}")
        app_state["cache"] = None

    yield # Application runs here

    if app_state.get("cache") is not None:
        logger.info("Closing Redis connection...")
        await app_state["cache"].aclose()
    if app_state.get("db_client"):
        logger.info("Closing MongoDB connection...")
        app_state["db_client"].close()
        logger.info("MongoDB connection closed.")

app = FastAPI(
    title="Expense Tracker API",
    description="API for tracking, importing and summarizing personal expenses.",
    version="0.1.0",
    lifespan=lifespan
)

app.state.limiter = limiter

# --- Exception Handlers: every error leaves in the same envelope as success ---
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return api_response(exc.status_code, None, message)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    logger.warning(f"Validation failed for {request.method} {request.url.path}: {problems}")
    return api_response(400, None, f"Validation error - {problems}")

@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {request.url.path}: {exc.detail}")
    return api_response(429, None, f"Rate limit exceeded: {exc.detail}")

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return api_response(500, None, "An unexpected server error occurred.")

# --- Add Middleware (Order Matters) ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # Adjust in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LimitUploadSizeMiddleware)

app.include_router(api_router, prefix="/api", tags=["expenses"])

# Make app state accessible via middleware
@app.middleware("http")
async def add_app_config_to_request(request: Request, call_next):
    """Adds database collection and cache client to the request state."""
    request.state.db_client = app_state.get("db_client")
    request.state.db = app_state.get("db")
    request.state.expenses_collection = app_state.get("expenses_collection")
    request.state.cache = app_state.get("cache")
    response = await call_next(request)
    return response

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=PORT,
        reload=True
    )
