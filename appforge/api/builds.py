"""Build job API endpoints."""

from fastapi import APIRouter, Query, Request, status

from appforge.core.errors import NotFoundError
from appforge.core.logging import get_logger
from appforge.core.rate_limit import BUILD_TRIGGER_LIMIT, limiter
from appforge.dependencies import DBSession, JobScheduler
from appforge.models.app import App
from appforge.schemas.build import BuildJobResponse, BuildRequest

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/apps/{app_id}/builds",
    response_model=BuildJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(BUILD_TRIGGER_LIMIT)
async def request_build(
    request: Request,
    app_id: str,
    body: BuildRequest,
    db: DBSession,
    scheduler: JobScheduler,
) -> BuildJobResponse:
    """
    Queue a build for an app.

    Idempotent while a build is pending: the queued or running job is
    returned. A failed latest job is re-queued with its attempt count bumped.
    """
    if await db.get(App, app_id) is None:
        raise NotFoundError(f"App {app_id} not found")

    job = await scheduler.enqueue(db, app_id, body.platform)
    logger.bind(app_id=app_id, job_id=job.id, platform=body.platform.value).info("build_requested")
    return BuildJobResponse.model_validate(job)


@router.get("/apps/{app_id}/builds", response_model=list[BuildJobResponse])
async def list_builds(
    app_id: str,
    db: DBSession,
    scheduler: JobScheduler,
    limit: int = Query(default=20, ge=1, le=100),
) -> list[BuildJobResponse]:
    """List an app's build jobs, newest first."""
    jobs = await scheduler.list_jobs(db, app_id, limit=limit)
    return [BuildJobResponse.model_validate(job) for job in jobs]


@router.get("/builds/{job_id}", response_model=BuildJobResponse)
async def get_build(job_id: str, db: DBSession, scheduler: JobScheduler) -> BuildJobResponse:
    job = await scheduler.get_job(db, job_id)
    if job is None:
        raise NotFoundError(f"Build {job_id} not found")
    return BuildJobResponse.model_validate(job)
