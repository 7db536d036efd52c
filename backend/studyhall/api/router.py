"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from studyhall.api.routes import admin, availability, payments, quotes, reservations, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(availability.router)
api_router.include_router(quotes.router)
api_router.include_router(reservations.router)
api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
api_router.include_router(admin.router)
