from fastapi import APIRouter

from metering.api.v1.endpoints import credits, webhooks

api_v1_router = APIRouter()

api_v1_router.include_router(credits.router, prefix="/credits", tags=["credits"])
api_v1_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
