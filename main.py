# main.py

from dotenv import load_dotenv
load_dotenv()

import logging

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
import time
import uuid

from phase_review_api import router as phase_review_router


# Request Logging Middleware
request_logger = logging.getLogger("request_logging")

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        start_time = time.time()

        # Reviewer identity forwarded by the identity provider
        actor = request.headers.get("X-Reviewer-Email") or "API"

        response = await call_next(request)

        latency_ms = (time.time() - start_time) * 1000

        request_logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "endpoint": request.url.path,
                "method": request.method,
                "actor": actor,
                "status_code": response.status_code,
                "latency_ms": round(latency_ms, 2),
            }
        )

        return response


app = FastAPI()
app.add_middleware(RequestLoggingMiddleware)
app.include_router(phase_review_router, tags=["phase-review"])


# ------------------------------------------------------------------
# Health check
# ------------------------------------------------------------------
def _healthy_response():
    return {"status": "ok"}


@app.get("/health")
def health():
    return _healthy_response()


@app.get("/healthz")
def healthz():
    return _healthy_response()


