"""
Amora — API dependencies.

Authentication verifies Firebase ID tokens with ``google-auth``; services are
built per request around the process-wide document store that the app
lifespan puts on ``app.state.store``.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Annotated, Optional

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from starlette.requests import HTTPConnection

from app.config import Settings, get_settings
from app.exceptions import AuthenticationError, ErrorCode
from app.services.candidate_feed import CandidateFeed
from app.services.chat_service import ChatThreadService
from app.services.photo_service import PhotoService
from app.services.profile_service import ProfileService
from app.services.swipe_service import SwipeEngine
from app.session import Session
from app.store import DocumentStore

logger = structlog.get_logger("amora.api.auth")

security = HTTPBearer(auto_error=False)


# ── Authentication ────────────────────────────────────────────────────────

class FirebaseTokenVerifier:
    """Verifies Firebase Auth ID tokens against Google's public certs."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self._request = google_requests.Request()

    async def verify(self, token: str) -> Session:
        if not token:
            raise AuthenticationError("Authorization token required")
        try:
            claims = await asyncio.to_thread(
                id_token.verify_firebase_token,
                token,
                self._request,
                audience=self.project_id or None,
            )
        except (ValueError, google_auth_exceptions.GoogleAuthError) as exc:
            logger.info("token_rejected", error=str(exc))
            raise AuthenticationError("Invalid or expired token", ErrorCode.INVALID_TOKEN) from exc
        if not claims:
            raise AuthenticationError("Invalid or expired token", ErrorCode.INVALID_TOKEN)
        uid = claims.get("user_id") or claims.get("sub")
        if not uid:
            raise AuthenticationError("Token has no subject", ErrorCode.INVALID_TOKEN)
        return Session(uid=uid, email=claims.get("email"), claims=claims)


@lru_cache(maxsize=1)
def get_token_verifier() -> FirebaseTokenVerifier:
    return FirebaseTokenVerifier(get_settings().GCP_PROJECT_ID)


async def get_session(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    verifier: FirebaseTokenVerifier = Depends(get_token_verifier),
) -> Session:
    if not credentials:
        raise AuthenticationError("Authorization header required")
    return await verifier.verify(credentials.credentials)


CurrentSession = Annotated[Session, Depends(get_session)]


# ── Store & services ──────────────────────────────────────────────────────

def get_store(conn: HTTPConnection) -> DocumentStore:
    store = getattr(conn.app.state, "store", None)
    if store is None:
        raise RuntimeError("Document store is not initialised")
    return store


def get_app_settings() -> Settings:
    return get_settings()


def get_profile_service(
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> ProfileService:
    return ProfileService(store, settings)


def get_photo_service(store: DocumentStore = Depends(get_store)) -> PhotoService:
    return PhotoService(store)


def get_candidate_feed(
    store: DocumentStore = Depends(get_store),
    profiles: ProfileService = Depends(get_profile_service),
    settings: Settings = Depends(get_app_settings),
) -> CandidateFeed:
    return CandidateFeed(store, profiles, settings)


def get_swipe_engine(
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> SwipeEngine:
    return SwipeEngine(store, settings)


def get_chat_service(
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> ChatThreadService:
    return ChatThreadService(store, settings)
