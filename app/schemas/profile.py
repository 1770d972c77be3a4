from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional

from app.models.profile import Gender


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class OccupationUpdate(_CamelModel):
    title: Optional[str] = Field(None, max_length=80)
    company: Optional[str] = Field(None, max_length=80)


class EducationUpdate(_CamelModel):
    level: Optional[str] = Field(None, pattern=r"^(high_school|bachelor|master|phd|other)$")
    school: Optional[str] = Field(None, max_length=120)


class LocationUpdate(_CamelModel):
    city: Optional[str] = Field(None, max_length=80)
    region: Optional[str] = Field(None, max_length=80)


class PreferencesUpdate(_CamelModel):
    genders: Optional[list[Gender]] = None
    age_min: Optional[int] = Field(None, ge=18, le=120)
    age_max: Optional[int] = Field(None, ge=18, le=120)


class ProfileUpdate(_CamelModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=50)
    bio: Optional[str] = Field(None, max_length=500)
    gender: Optional[Gender] = None
    birthday: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    interests: Optional[list[str]] = Field(None, max_length=20)
    languages: Optional[list[str]] = Field(None, max_length=10)
    occupation: Optional[OccupationUpdate] = None
    education: Optional[EducationUpdate] = None
    location: Optional[LocationUpdate] = None
    preferences: Optional[PreferencesUpdate] = None
    onboarded: Optional[bool] = None

    def to_patch(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class UsernameClaim(BaseModel):
    username: str


class UsernameResponse(BaseModel):
    username: str


class MainPhotoResponse(BaseModel):
    photo_url: str = Field(serialization_alias="photoURL")
