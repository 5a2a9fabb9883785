"""Pydantic schemas for storefront publishing."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class CentralCredentials(BaseModel):
    """Publish with the platform's shared service account."""

    mode: Literal["central"] = "central"


class UserCredentials(BaseModel):
    """Publish with the owner's connected account. Never persisted decrypted."""

    mode: Literal["user"] = "user"
    refresh_token: str = Field(repr=False)


PublishCredentials = CentralCredentials | UserCredentials


class PublishRequest(BaseModel):
    release_name: str | None = Field(default=None, max_length=100)


class PromoteRequest(BaseModel):
    from_track: str = "internal"
    to_track: str = "production"


class PublishResult(BaseModel):
    """A committed release on a storefront track."""

    package_name: str
    track: str
    version_code: int
    testing_url: str | None = None
    committed_at: datetime


class TrackRelease(BaseModel):
    name: str | None = None
    status: str | None = None
    version_codes: list[int] = Field(default_factory=list)


class TrackStatus(BaseModel):
    track: str
    releases: list[TrackRelease] = Field(default_factory=list)


class PromoteResult(BaseModel):
    package_name: str
    from_track: str
    to_track: str
    version_codes: list[int]
    committed_at: datetime
