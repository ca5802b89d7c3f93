"""
Security configuration for the trustgate API.

Callers are services and back-office tools authenticating with bearer JWTs,
so there is no cookie session and no CSRF layer; the middleware stack is
trusted hosts, compression, security headers and CORS.
"""

import os
import logging
from typing import List
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.middleware.gzip import GZipMiddleware

logger = logging.getLogger(__name__)


def _split_env(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class SecurityConfig:
    """Security configuration class"""

    def __init__(self):
        self.environment = os.getenv("ENVIRONMENT", "development").lower()
        self.allowed_hosts = self._get_allowed_hosts()
        self.cors_origins = self._get_cors_origins()

    def _get_allowed_hosts(self) -> List[str]:
        """Production restricts hosts to ALLOWED_HOSTS; elsewhere anything goes."""
        if self.environment == "production":
            return _split_env("ALLOWED_HOSTS") or ["localhost"]
        return ["*"]

    def _get_cors_origins(self) -> List[str]:
        configured = _split_env("CORS_ORIGINS")
        if configured or self.environment == "production":
            return configured
        return [
            "http://127.0.0.1:3000",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]

    def apply_security_middleware(self, app: FastAPI) -> None:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=self.allowed_hosts,
        )

        app.add_middleware(GZipMiddleware, minimum_size=1000)

        app.add_middleware(SecurityHeadersMiddleware)

        # CORS outermost so even error responses include CORS headers
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["Accept", "Content-Type", "Authorization", "X-Request-ID"],
            max_age=86400,
        )

        logger.info(f"Security middleware applied for environment: {self.environment}")


class SecurityHeadersMiddleware:
    """Adds security headers to every HTTP response."""

    headers = {
        b"x-content-type-options": b"nosniff",
        b"x-frame-options": b"DENY",
        b"referrer-policy": b"no-referrer",
        b"cache-control": b"no-store",
        b"content-security-policy": b"default-src 'none'; frame-ancestors 'none'",
    }

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        async def send_with_headers(message):
            if message.get("type") == "http.response.start":
                existing_headers = list(message.get("headers", []))
                existing_headers.extend(self.headers.items())
                message["headers"] = existing_headers
            await send(message)

        return await self.app(scope, receive, send_with_headers)


def validate_environment() -> List[str]:
    """Log warnings for missing or weak settings and return them."""
    warnings = []
    missing = [var for var in ("JWT_SECRET", "POSTGRES_URI", "MONGODB_URI", "REDIS_URI") if not os.getenv(var)]
    if missing:
        warnings.append(f"Missing environment variables: {missing}")

    if len(os.getenv("JWT_SECRET", "")) < 32:
        warnings.append("JWT_SECRET should be at least 32 characters long")

    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in ("development", "test", "staging", "production"):
        warnings.append(f"Invalid ENVIRONMENT value: {env}")

    for warning in warnings:
        logger.warning(warning)
    return warnings


security_config = SecurityConfig()
