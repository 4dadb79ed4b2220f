import logging
import time
import uuid

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from deployer.api.runs import router as runs_router
from deployer.core.config import IMAGE_REPOSITORY, NOTIFY_WEBHOOK_URL
from deployer.utils.logging_config import setup_logging

setup_logging(level=logging.INFO)
logger = logging.getLogger("main")

app = FastAPI(
    title="Build-and-Deploy Orchestrator API",
    description="Builds a container image, publishes it and rolls it out to the cluster.",
)


# ---------------------------------------------------------------------------
# Request tracing: every request gets an id echoed back in X-Request-ID
# ---------------------------------------------------------------------------
class RequestTraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        started = time.monotonic()
        logger.info("[%s] %s %s", request_id, request.method, request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("[%s] %s %s raised %s", request_id, request.method, request.url.path, e)
            raise

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "[%s] -> %d in %.1fms",
            request_id, response.status_code, (time.monotonic() - started) * 1000,
        )
        return response


app.add_middleware(RequestTraceMiddleware)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "image_repository_configured": bool(IMAGE_REPOSITORY),
        "notifications_configured": bool(NOTIFY_WEBHOOK_URL),
    }


app.include_router(runs_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
