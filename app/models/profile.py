"""
Amora — User profile documents (``users/{uid}``).
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import Field

from app.models.base import DocumentModel

Gender = Literal["male", "female", "nonbinary", "prefer_not_to_say", "custom"]

_BIRTHDAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

DEFAULT_DISPLAY_NAME = "User"


def calculate_age(birthday: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Whole years since a ``YYYY-MM-DD`` birthday, or None when unparseable."""
    if not birthday:
        return None
    m = _BIRTHDAY_RE.match(birthday)
    if not m:
        return None
    try:
        dob = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return age


class Occupation(DocumentModel):
    title: Optional[str] = None
    company: Optional[str] = None


class Education(DocumentModel):
    level: Optional[str] = None
    school: Optional[str] = None


class Location(DocumentModel):
    city: Optional[str] = None
    region: Optional[str] = None


class DiscoveryPreferences(DocumentModel):
    genders: Optional[list[str]] = None
    age_min: Optional[int] = None
    age_max: Optional[int] = None


class UserProfile(DocumentModel):
    uid: str
    email: str = ""
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")
    main_photo_id: Optional[str] = None
    roles: list[str] = ["user"]
    onboarded: bool = False
    username: Optional[str] = None
    bio: Optional[str] = None
    gender: Optional[str] = None
    birthday: Optional[str] = None
    interests: list[str] = []
    languages: list[str] = []
    occupation: Optional[Occupation] = None
    education: Optional[Education] = None
    location: Optional[Location] = None
    preferences: Optional[DiscoveryPreferences] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def age(self) -> Optional[int]:
        return calculate_age(self.birthday)


class Candidate(DocumentModel):
    """Reduced profile card shown in the swipe feed."""

    uid: str
    display_name: str = DEFAULT_DISPLAY_NAME
    photo_url: Optional[str] = Field(None, alias="photoURL")
    birthday: Optional[str] = None
    bio: Optional[str] = None
    occupation: Optional[Occupation] = None
    gender: Optional[str] = None
    age: Optional[int] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "Candidate":
        return cls(
            uid=profile.uid,
            display_name=profile.display_name or DEFAULT_DISPLAY_NAME,
            photo_url=profile.photo_url,
            birthday=profile.birthday,
            bio=profile.bio,
            occupation=profile.occupation,
            gender=profile.gender,
            age=profile.age,
        )


class Photo(DocumentModel):
    """``users/{uid}/photos/{id}``"""

    id: str
    url: str
    storage_path: str
    width: int = 0
    height: int = 0
    is_main: bool = False
    order: int = 0
    uploaded_at: Optional[datetime] = None
