"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import health, integrations, providers, webhooks, whatsapp

router = APIRouter()

router.include_router(health.router)
router.include_router(integrations.router)
# WhatsApp before the generic /{provider}/... routes
router.include_router(whatsapp.router)
router.include_router(providers.router)
router.include_router(webhooks.router)
