import logging
import time

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from app.api.payments import router as payments_router
from app.api.portal import limiter as portal_limiter
from app.api.portal import router as portal_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY

app = FastAPI(title="hotspot_billing API")
logger = logging.getLogger(__name__)
app.state.limiter = portal_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", None) or "unmatched"
    labels = {"method": request.method, "path": path, "status": str(response.status_code)}
    REQUEST_COUNT.labels(**labels).inc()
    REQUEST_LATENCY.labels(**labels).observe(time.monotonic() - start)
    return response


app.include_router(portal_router, prefix="/api")
app.include_router(payments_router, prefix="/api")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
