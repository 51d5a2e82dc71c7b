from fastapi import APIRouter
from app.api.v1.routes import payments, downloads, videos, subscriptions, admin

api_router = APIRouter()

api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(downloads.router, prefix="/downloads", tags=["downloads"])
api_router.include_router(videos.router, prefix="/videos", tags=["videos"])
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
