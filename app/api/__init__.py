"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import plans

router = APIRouter()

# Plan generation routes
router.include_router(plans.router, prefix="/plans", tags=["plans"])
