"""V1 API router -- aggregates all v1 endpoint routers under /api/v1."""

from __future__ import annotations

from fastapi import APIRouter

from src.dedupe.api.v1 import exports, groups, plans, processes

router = APIRouter(prefix="/api/v1")

router.include_router(processes.router)
router.include_router(groups.router)
router.include_router(plans.router)
router.include_router(exports.router)
