import time

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, config, database
from .errors import MarketplaceError
from .logging_config import configure_logging
from .realtime import router as realtime_router
from .routes import auth, cart, categories, location, orders, payments, products, reviews, shops, users
from .utils import utcnow

logger = structlog.get_logger(__name__)

# App init
app = FastAPI(title="Local Commerce Marketplace API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


# Errors
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Validation failed"
    logger.info("request_invalid", path=request.url.path, errors=len(errors))
    return error_response(422, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", method=request.method, path=request.url.path)
    return error_response(500, "Internal server error")


# Routes
for module in (auth, users, shops, categories, products, reviews, cart, orders, payments, location):
    app.include_router(module.router, prefix="/api")
app.include_router(realtime_router)


@app.get("/")
def root():
    return {"message": "Local Commerce Marketplace API running"}


@app.get("/health")
def health():
    return {"status": "OK", "timestamp": utcnow().isoformat(), "environment": config.ENVIRONMENT}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": None,
        "connection_status": "not connected",
        "collections": [],
    }
    try:
        response["database_name"] = database.db.name
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
        response["connection_status"] = "connected"
    except PyMongoError as exc:
        logger.warning("database_check_failed", error=str(exc))
        response["database"] = f"error: {str(exc)[:50]}"
    return response


@app.on_event("startup")
def startup():
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    try:
        database.ensure_indexes()
    except PyMongoError:
        logger.exception("index_creation_failed")
    logger.info("app_started", environment=config.ENVIRONMENT, port=config.PORT)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
