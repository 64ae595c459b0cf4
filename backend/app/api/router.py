"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from app.api.routes import auth, bookings, holds, passengers, payments, trains

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(auth.router)
api_router.include_router(trains.router)
api_router.include_router(holds.router)
api_router.include_router(passengers.router)
api_router.include_router(bookings.router)
api_router.include_router(payments.router)
