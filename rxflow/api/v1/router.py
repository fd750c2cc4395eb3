# rxflow/api/v1/router.py
from fastapi import APIRouter

from rxflow.api.v1.endpoints import (
    admin_jobs,
    admin_routing,
    orders,
    provider_routing,
    refill_queue,
    subscriptions,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(refill_queue.router, prefix="/refill-queue", tags=["refill-queue"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(provider_routing.router, prefix="/provider/routing", tags=["provider-routing"])
api_router.include_router(admin_routing.router, prefix="/admin/routing", tags=["admin-routing"])
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(admin_jobs.router, prefix="/admin/jobs", tags=["admin-jobs"])
