"""API router registry used by the app factory.

This keeps route module imports and inclusion order in one place so
`staffverify.main` stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import admin, health, storage, verification

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    verification.router,
    admin.router,
    storage.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS"]
