"""CORS middleware configuration."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from willtank.config import Settings

# X-User-Id is set by the web app's auth proxy on check-ins
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Request-Id", "X-User-Id"]
EXPOSED_HEADERS = ["X-Request-Id", "X-RateLimit-Remaining", "X-RateLimit-Limit", "Retry-After"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Contact links and check-ins are opened from the web app.

    The lifecycle API only reads and posts, and clients need ``Retry-After``
    to back off from 429 and 503 responses.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=ALLOWED_HEADERS,
        expose_headers=EXPOSED_HEADERS,
    )
