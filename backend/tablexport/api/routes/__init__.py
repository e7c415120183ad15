from fastapi import APIRouter

from tablexport.api.routes import admin, health, paypal, subscription

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(subscription.router)
api_router.include_router(paypal.router)
api_router.include_router(admin.router)
