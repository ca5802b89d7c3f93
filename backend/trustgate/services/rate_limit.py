from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi.responses import JSONResponse
from fastapi import Request
from jose import jwt, JWTError

from trustgate.config import JWT_SECRET, JWT_ALGORITHM

# Per-route limits used by the routers
ASSESSMENT_LIMIT = "30/minute"
DEVICE_LIMIT = "30/minute"
MFA_CHECK_LIMIT = "120/minute"
EVENT_INGEST_LIMIT = "600/minute"
READ_LIMIT = "120/minute"


def client_key(request: Request) -> str:
    """Rate-limit authenticated callers per subject, everyone else per address."""
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        try:
            claims = jwt.decode(auth.split(" ", 1)[1], JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except JWTError:
            claims = {}
        if claims.get("sub"):
            return f"user:{claims['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=client_key, default_limits=[])


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "detail": {
                "message": "Rate limit exceeded for this endpoint.",
                "limit": str(exc.detail),
            }
        },
    )
