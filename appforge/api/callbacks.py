"""Callbacks posted by the remote iOS build workflow."""

import secrets
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, status

from appforge.core.errors import NotFoundError
from appforge.core.logging import get_logger
from appforge.dependencies import AppSettings, DBSession, JobScheduler, Worker
from appforge.models.app import App
from appforge.models.build_job import BuildJobStatus, BuildPlatform
from appforge.schemas.remote_build import IosBuildCallback, IosBuildCallbackResponse

logger = get_logger(__name__)

router = APIRouter()


def _authorized(header: str | None, secret: str) -> bool:
    if not secret or not header:
        return False
    return secrets.compare_digest(header.encode(), f"Bearer {secret}".encode())


@router.post("/ios-build-callback", response_model=IosBuildCallbackResponse)
async def ios_build_callback(
    body: IosBuildCallback,
    db: DBSession,
    settings: AppSettings,
    scheduler: JobScheduler,
    worker: Worker,
    authorization: Annotated[str | None, Header()] = None,
) -> IosBuildCallbackResponse:
    """
    Receive the end-of-run notice from the build workflow.

    The worker polling the run stays the only writer of the job's outcome.
    This records the run id on the app's running iOS job when the worker has
    not resolved it yet, and wakes the worker so it reads the result now
    instead of at its next poll.
    """
    if not _authorized(authorization, settings.ios_callback_secret):
        logger.bind(app_id=body.app_id).warning("ios_callback_unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    if await db.get(App, body.app_id) is None:
        raise NotFoundError(f"App {body.app_id} not found")

    job = await scheduler.latest_job(db, body.app_id, BuildPlatform.IOS)
    if job is None or job.status != BuildJobStatus.RUNNING:
        logger.bind(app_id=body.app_id, run_id=body.run_id, status=body.status).info(
            "ios_callback_without_running_job"
        )
        return IosBuildCallbackResponse()

    if body.run_id and not job.remote_run_id and job.lock_token:
        await scheduler.record_remote_run(db, job.id, job.lock_token, body.run_id)
        # The worker reads it from its own session
        await db.commit()

    woken = worker.wake(job.id)
    logger.bind(
        app_id=body.app_id,
        job_id=job.id,
        run_id=body.run_id,
        status=body.status,
        error=body.error,
        woken=woken,
    ).info("ios_callback_received")
    return IosBuildCallbackResponse(job_id=job.id, woken=woken)
