from fastapi import APIRouter

from app.api.v1 import discount_sets
from app.api.v1 import orders_sync
from app.api.v1 import proxy
from app.api.v1 import webhooks
from app.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(proxy.router)
api_router.include_router(webhooks.router)
api_router.include_router(orders_sync.router)
api_router.include_router(discount_sets.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
def readiness() -> dict[str, str]:
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
