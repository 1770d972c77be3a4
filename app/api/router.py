"""
Amora — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import chats, discovery, profiles

router = APIRouter()

router.include_router(profiles.router, prefix="/profiles", tags=["Profiles"])
router.include_router(discovery.router, tags=["Discovery"])
router.include_router(chats.router, prefix="/chats", tags=["Chats"])
