from appforge.models.app import App, PublishingMode
from appforge.models.base import Base
from appforge.models.build_job import BuildJob, BuildJobStatus, BuildPlatform
from appforge.models.lock_lease import LockLease
from appforge.models.publisher_account import PublisherAccount

__all__ = [
    "Base",
    "App",
    "PublishingMode",
    "BuildJob",
    "BuildJobStatus",
    "BuildPlatform",
    "LockLease",
    "PublisherAccount",
]
