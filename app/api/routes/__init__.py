"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.bookings import router as bookings_router
from app.api.routes.credits import router as credits_router
from app.api.routes.payments import router as payments_router
from app.api.routes.trips import router as trips_router

router = APIRouter()

router.include_router(trips_router, prefix="/trips", tags=["trips"])
router.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(credits_router, prefix="/credits", tags=["credits"])
