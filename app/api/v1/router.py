"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.health import router as health_router
from app.api.v1.pipeline import router as pipeline_router
from app.api.v1.exports import router as exports_router
from app.api.v1.reports import router as reports_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(pipeline_router, tags=["pipeline"])
v1_router.include_router(exports_router, tags=["exports"])
v1_router.include_router(reports_router, tags=["reports"])
