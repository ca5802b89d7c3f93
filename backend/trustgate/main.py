import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exception_handlers import RequestValidationError
from fastapi.exceptions import HTTPException
from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded

from trustgate.config import LOG_LEVEL
from trustgate.database import configured_backends, ensure_mongo_indexes, mongo_db, redis_client
from trustgate.api import admin, analytics, devices, mfa, verification
from trustgate.dependencies import install_services
from trustgate.errors import NotFoundError, ValidationError
from trustgate.security import security_config, validate_environment
from trustgate.services.geoip import init_geoip_reader
from trustgate.services.rate_limit import limiter, rate_limit_exceeded_handler
from trustgate.store.memory import InMemoryRecordStore
from trustgate.store.mongo import MongoRecordStore

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

validate_environment()

app = FastAPI(title="trustgate", version="0.1.0")


# JSON error responses
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail if exc.detail else str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": {"message": exc.message}})


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": {"message": exc.message, "field": exc.field}})


# Security and rate limiting
security_config.apply_security_middleware(app)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.get("/health")
def health_check():
    backends = configured_backends()
    return {
        "status": "ok",
        **{name: "configured" if enabled else "not configured" for name, enabled in backends.items()},
    }


app.include_router(verification.router, prefix="/api")
app.include_router(devices.router, prefix="/api")
app.include_router(mfa.router, prefix="/api")
app.include_router(analytics.router, prefix="/api")
app.include_router(admin.router, prefix="/api")


@app.on_event("startup")
async def on_startup():
    # Tests install their own services before the app starts
    if getattr(app.state, "store", None) is None:
        if mongo_db is not None:
            store = MongoRecordStore(mongo_db)
        else:
            logger.warning("MONGODB_URI not set; using the in-memory record store")
            store = InMemoryRecordStore()
        install_services(app, store, redis_client)
    await ensure_mongo_indexes()
    init_geoip_reader()
