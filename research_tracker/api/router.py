from fastapi import APIRouter

from research_tracker.api.routes import companies, health, webhook

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(companies.router, prefix="/companies", tags=["companies"])
api_router.include_router(webhook.router, prefix="/webhook", tags=["processor"])
