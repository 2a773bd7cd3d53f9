import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from runtrace.api.webhook import router as webhook_router
from runtrace.core.config import LOG_DIR, WEBHOOK_HOST, WEBHOOK_PORT
from runtrace.core.constants import VERSION
from runtrace.utils.logging_config import setup_logging

setup_logging(level=logging.INFO, log_dir=LOG_DIR)
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.client.aclose()
        pipeline.exporter.shutdown()
        logger.info("Pipeline resources released")


app = FastAPI(title="runtrace webhook receiver", version=VERSION, lifespan=lifespan)

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        event = request.headers.get("X-GitHub-Event", "-")
        logger.info(f"Incoming: {request.method} {request.url.path} [{event}] from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise

app.add_middleware(LoggingMiddleware)

# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok", "version": VERSION}

app.include_router(webhook_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host=WEBHOOK_HOST, port=WEBHOOK_PORT)
