"""
Amora — Profiles API

The signed-in user's own profile, username and photos.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from app.api.deps import CurrentSession, get_photo_service, get_profile_service
from app.models.profile import Photo, UserProfile
from app.schemas.profile import MainPhotoResponse, ProfileUpdate, UsernameClaim, UsernameResponse
from app.services.photo_service import PhotoService
from app.services.profile_service import ProfileService

logger = structlog.get_logger("amora.api.profiles")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /me: own profile (created on first sight)
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/me", response_model=UserProfile, summary="Get (or initialise) my profile")
async def get_my_profile(
    session: CurrentSession,
    profiles: ProfileService = Depends(get_profile_service),
) -> UserProfile:
    """Return the caller's profile, recording the sign-in.

    The first call for a new account creates the default profile.
    """
    return await profiles.upsert_on_login(
        session.uid,
        email=session.email,
        display_name=session.claims.get("name"),
        photo_url=session.claims.get("picture"),
    )


# ──────────────────────────────────────────────────────────────────────────────
# PATCH /me: partial update
# ──────────────────────────────────────────────────────────────────────────────

@router.patch("/me", response_model=UserProfile, summary="Update my profile")
async def update_my_profile(
    payload: ProfileUpdate,
    session: CurrentSession,
    profiles: ProfileService = Depends(get_profile_service),
) -> UserProfile:
    return await profiles.update_fields(session.uid, payload.to_patch())


@router.put("/me/username", response_model=UsernameResponse, summary="Claim a username")
async def claim_username(
    payload: UsernameClaim,
    session: CurrentSession,
    profiles: ProfileService = Depends(get_profile_service),
) -> UsernameResponse:
    username = await profiles.claim_username(session.uid, payload.username)
    return UsernameResponse(username=username)


# ──────────────────────────────────────────────────────────────────────────────
# Photos
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/me/photos", response_model=list[Photo], summary="List my photos")
async def list_my_photos(
    session: CurrentSession,
    photos: PhotoService = Depends(get_photo_service),
) -> list[Photo]:
    return await photos.list_photos(session.uid)


@router.post(
    "/me/photos",
    response_model=Photo,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a photo",
)
async def upload_photo(
    session: CurrentSession,
    file: UploadFile = File(...),
    make_main: bool = Form(False),
    width: int = Form(0),
    height: int = Form(0),
    photos: PhotoService = Depends(get_photo_service),
) -> Photo:
    data = await file.read()
    logger.info("upload_photo_start", uid=session.uid, filename=file.filename, size=len(data))
    return await photos.upload_photo(
        session.uid,
        data,
        content_type=file.content_type or "image/jpeg",
        make_main=make_main,
        width=width,
        height=height,
    )


@router.put("/me/photos/{photo_id}/main", response_model=MainPhotoResponse, summary="Set main photo")
async def set_main_photo(
    photo_id: str,
    session: CurrentSession,
    photos: PhotoService = Depends(get_photo_service),
) -> MainPhotoResponse:
    url = await photos.set_main_photo(session.uid, photo_id)
    return MainPhotoResponse(photo_url=url)


@router.delete(
    "/me/photos/{photo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a photo",
)
async def delete_photo(
    photo_id: str,
    session: CurrentSession,
    photos: PhotoService = Depends(get_photo_service),
) -> None:
    await photos.delete_photo(session.uid, photo_id)
