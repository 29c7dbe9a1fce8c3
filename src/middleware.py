import logging
import time
import uuid

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request

from src.config import settings

logger = logging.getLogger("journey.access")


def register_middleware(app: FastAPI):

    @app.middleware("http")
    async def custom_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        response = await call_next(request)
        processing_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        client = f"{request.client.host}:{request.client.port}" if request.client else "-"
        logger.info(
            f"{client} - {request.method} - {request.url.path} - {response.status_code} "
            f"completed after {processing_time:.3f}s request_id={request_id}"
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
        expose_headers=["X-Request-ID", "Content-Disposition"],
    )
