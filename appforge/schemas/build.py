"""Pydantic schemas for the build API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from appforge.models.build_job import BuildJobStatus, BuildPlatform


class BuildRequest(BaseModel):
    platform: BuildPlatform = BuildPlatform.ANDROID


class BuildJobResponse(BaseModel):
    """A build job as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    app_id: str
    platform: BuildPlatform
    status: BuildJobStatus
    attempts: int
    error: str | None = None
    validation_json: dict | None = None
    remote_run_id: str | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
