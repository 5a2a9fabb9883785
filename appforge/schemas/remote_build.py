"""Pydantic schemas for the remote (GitHub Actions) build runner."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TriggerOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOT_CONFIGURED = "not_configured"


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RunConclusion(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class RemoteBuildConfig(BaseModel):
    """Parameters carried by a workflow dispatch."""

    app_id: str
    app_name: str
    bundle_id: str
    website_url: str
    version_code: int


class TriggerResult(BaseModel):
    """Outcome of a dispatch. ``run_id`` may be None even when accepted."""

    outcome: TriggerOutcome
    run_id: str | None = None
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == TriggerOutcome.ACCEPTED


class RemoteBuildRun(BaseModel):
    """Observed state of one workflow run."""

    run_id: str
    status: RunStatus
    conclusion: RunConclusion | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def succeeded(self) -> bool:
        return self.is_completed and self.conclusion == RunConclusion.SUCCESS


class IosBuildCallback(BaseModel):
    """Completion notice the build workflow posts back when a run ends."""

    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(alias="appId")
    run_id: str | None = Field(default=None, alias="runId")
    status: str
    error: str | None = None
    artifact_url: str | None = Field(default=None, alias="artifactUrl")

    @field_validator("run_id", mode="before")
    @classmethod
    def run_id_as_text(cls, value):
        return str(value) if value is not None else None


class IosBuildCallbackResponse(BaseModel):
    ok: bool = True
    job_id: str | None = None
    woken: bool = False
