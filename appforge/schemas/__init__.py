from appforge.schemas.build import BuildJobResponse, BuildRequest
from appforge.schemas.publish import (
    CentralCredentials,
    PromoteRequest,
    PromoteResult,
    PublishCredentials,
    PublishRequest,
    PublishResult,
    TrackRelease,
    TrackStatus,
    UserCredentials,
)
from appforge.schemas.remote_build import (
    IosBuildCallback,
    IosBuildCallbackResponse,
    RemoteBuildConfig,
    RemoteBuildRun,
    RunConclusion,
    RunStatus,
    TriggerOutcome,
    TriggerResult,
)
from appforge.schemas.validation import ArtifactMetadata, ValidationResult

__all__ = [
    "BuildJobResponse",
    "BuildRequest",
    "CentralCredentials",
    "UserCredentials",
    "PublishCredentials",
    "PublishRequest",
    "PromoteRequest",
    "PromoteResult",
    "PublishResult",
    "TrackRelease",
    "TrackStatus",
    "IosBuildCallback",
    "IosBuildCallbackResponse",
    "RemoteBuildConfig",
    "RemoteBuildRun",
    "RunConclusion",
    "RunStatus",
    "TriggerOutcome",
    "TriggerResult",
    "ArtifactMetadata",
    "ValidationResult",
]
