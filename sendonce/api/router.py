"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from sendonce.api.send_once import router as send_once_router
from sendonce.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(send_once_router)
api_router.include_router(health_router)
