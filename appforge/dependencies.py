from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.config import AppConfig, Settings, get_config, get_settings
from appforge.core.database import AsyncSessionLocal, get_db
from appforge.core.locks import LockManager, create_lock_manager
from appforge.jobs.scheduler import BuildJobScheduler
from appforge.jobs.worker import BuildWorker
from appforge.publishing.coordinator import PublishCoordinator

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Config = Annotated[AppConfig, Depends(get_config)]


@lru_cache
def get_lock_manager() -> LockManager:
    """Process-wide lock manager on the configured backend."""
    return create_lock_manager(get_settings(), AsyncSessionLocal)


@lru_cache
def get_job_scheduler() -> BuildJobScheduler:
    return BuildJobScheduler(get_lock_manager(), get_settings())


@lru_cache
def get_publish_coordinator() -> PublishCoordinator:
    return PublishCoordinator(
        get_lock_manager(),
        settings=get_settings(),
        config=get_config().publishing,
        jobs=get_job_scheduler(),
    )


@lru_cache
def get_build_worker() -> BuildWorker:
    return BuildWorker(
        AsyncSessionLocal,
        get_job_scheduler(),
        settings=get_settings(),
        config=get_config(),
    )


JobScheduler = Annotated[BuildJobScheduler, Depends(get_job_scheduler)]
Worker = Annotated[BuildWorker, Depends(get_build_worker)]
Coordinator = Annotated[PublishCoordinator, Depends(get_publish_coordinator)]
