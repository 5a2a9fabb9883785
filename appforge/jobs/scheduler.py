"""
Build job lifecycle: queued -> running -> succeeded | failed.

A job only becomes ``running`` while its worker holds ``build:<app_id>``.
Every transition out of ``running`` is a compare-and-set on the job's
``lock_token``, so a worker whose lease was reclaimed cannot overwrite the
new holder's result.
"""

from datetime import timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.config import Settings, get_settings
from appforge.core.datetime_utils import get_cutoff, utc_now
from appforge.core.errors import LockConflictError
from appforge.core.locks import LockManager, LockToken, build_lock_name
from appforge.core.logging import get_logger
from appforge.models.build_job import BuildJob, BuildJobStatus, BuildPlatform

logger = get_logger(__name__)

CLAIM_BATCH_SIZE = 20


class BuildJobScheduler:
    """Owns BuildJob rows and their build locks."""

    def __init__(self, locks: LockManager, settings: Settings | None = None) -> None:
        self.locks = locks
        self.settings = settings or get_settings()

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.build_lock_ttl_seconds)

    async def get_job(self, db: AsyncSession, job_id: str) -> BuildJob | None:
        return await db.get(BuildJob, job_id, populate_existing=True)

    async def list_jobs(self, db: AsyncSession, app_id: str, limit: int = 20) -> list[BuildJob]:
        result = await db.execute(
            select(BuildJob)
            .where(BuildJob.app_id == app_id)
            .order_by(BuildJob.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def latest_job(
        self,
        db: AsyncSession,
        app_id: str,
        platform: BuildPlatform,
    ) -> BuildJob | None:
        result = await db.execute(
            select(BuildJob)
            .where(BuildJob.app_id == app_id, BuildJob.platform == platform)
            .order_by(BuildJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def latest_succeeded(
        self,
        db: AsyncSession,
        app_id: str,
        platform: BuildPlatform,
    ) -> BuildJob | None:
        result = await db.execute(
            select(BuildJob)
            .where(
                BuildJob.app_id == app_id,
                BuildJob.platform == platform,
                BuildJob.status == BuildJobStatus.SUCCEEDED,
            )
            .order_by(BuildJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def enqueue(self, db: AsyncSession, app_id: str, platform: BuildPlatform) -> BuildJob:
        """
        Request a build.

        - latest job queued or running: returned unchanged
        - latest job failed: the same row is re-queued with attempts + 1
        - otherwise: a new job with attempts = 1
        """
        latest = await self.latest_job(db, app_id, platform)

        if latest is not None and latest.status in (BuildJobStatus.QUEUED, BuildJobStatus.RUNNING):
            logger.bind(job_id=latest.id, app_id=app_id, status=latest.status.value).debug(
                "build_already_pending"
            )
            return latest

        if latest is not None and latest.status == BuildJobStatus.FAILED:
            latest.status = BuildJobStatus.QUEUED
            latest.attempts += 1
            latest.error = None
            latest.lock_token = None
            latest.locked_at = None
            latest.finished_at = None
            latest.remote_run_id = None
            latest.updated_at = utc_now()
            await db.flush()
            logger.bind(job_id=latest.id, app_id=app_id, attempts=latest.attempts).info("build_requeued")
            return latest

        job = BuildJob(
            app_id=app_id,
            platform=platform,
            status=BuildJobStatus.QUEUED,
            attempts=1,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        db.add(job)
        await db.flush()
        logger.bind(job_id=job.id, app_id=app_id, platform=platform.value).info("build_enqueued")
        return job

    async def claim_next(self, db: AsyncSession, worker_id: str) -> tuple[BuildJob, LockToken] | None:
        """
        Claim the oldest runnable job and its app's build lock.

        Runnable means queued, or running with a lease older than the TTL.
        Jobs whose app lock is held elsewhere are skipped.
        """
        stale_before = utc_now() - self.lease_ttl
        result = await db.execute(
            select(BuildJob)
            .where(
                or_(
                    BuildJob.status == BuildJobStatus.QUEUED,
                    (BuildJob.status == BuildJobStatus.RUNNING) & (BuildJob.locked_at < stale_before),
                )
            )
            .order_by(BuildJob.created_at)
            .limit(CLAIM_BATCH_SIZE)
        )
        candidates = list(result.scalars().all())

        for job in candidates:
            try:
                lock = await self.locks.acquire(
                    build_lock_name(job.app_id),
                    self.settings.build_lock_ttl_seconds,
                    timeout=0,
                )
            except LockConflictError:
                continue

            if await self.mark_running(db, job.id, lock, expected_token=job.lock_token):
                claimed = await self.get_job(db, job.id)
                if claimed is not None:
                    if job.status == BuildJobStatus.RUNNING:
                        logger.bind(job_id=job.id, app_id=job.app_id).warning("stale_build_reclaimed")
                    logger.bind(job_id=job.id, app_id=job.app_id, worker=worker_id).info("build_claimed")
                    return claimed, lock

            await self.locks.release(lock)

        return None

    async def mark_running(
        self,
        db: AsyncSession,
        job_id: str,
        lock: LockToken,
        expected_token: str | None = None,
    ) -> bool:
        """
        Move a job to running under ``lock``.

        ``expected_token`` is the job's current lock token (None for a queued
        job); the transition only happens if it is unchanged.

        Raises:
            LockConflictError: ``lock`` is not the live holder of the build lock
        """
        job = await self.get_job(db, job_id)
        if job is None:
            return False
        if lock.name != build_lock_name(job.app_id) or not await self.locks.holds(lock):
            raise LockConflictError(lock.name)

        current_token = (
            BuildJob.lock_token.is_(None) if expected_token is None else BuildJob.lock_token == expected_token
        )
        result = await db.execute(
            update(BuildJob)
            .where(
                BuildJob.id == job_id,
                BuildJob.status.in_([BuildJobStatus.QUEUED, BuildJobStatus.RUNNING]),
                current_token,
            )
            .values(
                status=BuildJobStatus.RUNNING,
                lock_token=lock.token,
                locked_at=utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        return result.rowcount == 1

    async def mark_terminal(
        self,
        db: AsyncSession,
        job_id: str,
        outcome: BuildJobStatus,
        error: str | None = None,
        token: str | None = None,
        validation: dict | None = None,
    ) -> bool:
        """
        Finish a running job.

        With ``token`` the write only applies if the job is still owned by it;
        a stale holder's write is a no-op returning False.
        """
        if not outcome.is_terminal:
            raise ValueError(f"{outcome.value} is not a terminal status")

        conditions = [BuildJob.id == job_id, BuildJob.status == BuildJobStatus.RUNNING]
        if token is not None:
            conditions.append(BuildJob.lock_token == token)

        values: dict = {
            "status": outcome,
            "error": error,
            "lock_token": None,
            "finished_at": utc_now(),
            "updated_at": utc_now(),
        }
        if validation is not None:
            values["validation_json"] = validation

        result = await db.execute(
            update(BuildJob)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.flush()

        applied = result.rowcount == 1
        if applied:
            logger.bind(job_id=job_id, outcome=outcome.value, error=error).info("build_finished")
        else:
            logger.bind(job_id=job_id, outcome=outcome.value).warning("build_finish_skipped_not_owner")
        return applied

    async def record_remote_run(self, db: AsyncSession, job_id: str, token: str, run_id: str) -> None:
        await db.execute(
            update(BuildJob)
            .where(BuildJob.id == job_id, BuildJob.lock_token == token)
            .values(remote_run_id=run_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.flush()

    async def purge_finished(self, db: AsyncSession, older_than_days: int) -> int:
        """Delete succeeded/failed jobs older than the retention window."""
        cutoff = get_cutoff(days=older_than_days)
        result = await db.execute(
            delete(BuildJob)
            .where(
                BuildJob.status.in_([BuildJobStatus.SUCCEEDED, BuildJobStatus.FAILED]),
                BuildJob.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        if result.rowcount:
            logger.bind(deleted=result.rowcount, older_than_days=older_than_days).info("build_jobs_purged")
        return result.rowcount
