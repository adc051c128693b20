"""
FastAPI Router for the relay backend API
"""

from fastapi import APIRouter

# Import sub-routers
from src.api.node import router as node_router
from src.api.payment import router as payment_router


# Main router
router = APIRouter()

# Include sub-routers (they carry their own prefixes)
router.include_router(node_router)  # Node heartbeats, reports, config pulls
router.include_router(payment_router)  # Payment gateway callbacks (public)
