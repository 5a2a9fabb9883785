"""
Build worker: claims queued jobs and runs them to a terminal state.

Per job:
1. Claim the job together with its app's build lock
2. Android: generate the wrapper project and compile it with Gradle in Docker
   iOS: dispatch the GitHub Actions workflow, poll it and download the .ipa
3. Inspect the Android artifact and attach the verdict to the job
4. Mark the job terminal and release the lock
5. Re-queue retryable failures until max_build_attempts is reached
"""

import asyncio
import contextlib
import os
import shutil
import socket
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appforge.build.generator import AndroidProjectGenerator, AppBuildConfig, package_name_for
from appforge.build.remote import GitHubBuildBridge
from appforge.build.toolchain import GradleBuildResult, run_gradle_build
from appforge.config import AppConfig, Settings, get_config, get_settings
from appforge.core.datetime_utils import utc_now
from appforge.core.errors import BuildConfigurationError
from appforge.core.locks import LockToken
from appforge.core.logging import get_logger
from appforge.inspection.inspector import ArtifactInspector
from appforge.jobs.scheduler import BuildJobScheduler
from appforge.models.app import App
from appforge.models.build_job import BuildJob, BuildJobStatus, BuildPlatform
from appforge.schemas.remote_build import RemoteBuildConfig, TriggerOutcome

logger = get_logger(__name__)

APK_MIME = "application/vnd.android.package-archive"
ARTIFACT_SUFFIXES = (".apk", ".aab", ".ipa")


@dataclass
class JobOutcome:
    status: BuildJobStatus
    retryable: bool = False


class BuildWorker:
    """Runs build jobs one at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: BuildJobScheduler,
        inspector: ArtifactInspector | None = None,
        bridge: GitHubBuildBridge | None = None,
        generator: AndroidProjectGenerator | None = None,
        gradle_runner=run_gradle_build,
        settings: Settings | None = None,
        config: AppConfig | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.config = config or get_config()
        self.inspector = inspector or ArtifactInspector(self.config.inspection)
        self.bridge = bridge or GitHubBuildBridge(self.settings)
        self.generator = generator or AndroidProjectGenerator(self.settings.android_template_dir or None)
        self.gradle_runner = gradle_runner
        self.worker_id = worker_id or self.settings.worker_id or socket.gethostname()
        self._wakeups: dict[str, asyncio.Event] = {}

    @property
    def artifacts_root(self) -> Path:
        return Path(self.settings.artifacts_dir)

    def wake(self, job_id: str) -> bool:
        """Cut short the poll wait of a remote build; False when nothing is waiting."""
        event = self._wakeups.get(job_id)
        if event is None:
            return False
        event.set()
        return True

    async def _pause(self, job_id: str) -> None:
        event = self._wakeups.setdefault(job_id, asyncio.Event())
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(event.wait(), timeout=self.settings.remote_build_poll_seconds)
        event.clear()

    # -- Loop ---------------------------------------------------------------

    async def run_once(self) -> BuildJob | None:
        """Claim and process at most one job. Returns the job it processed."""
        async with self.session_factory() as db:
            claimed = await self.scheduler.claim_next(db, self.worker_id)
            await db.commit()
        if claimed is None:
            return None

        job, lock = claimed
        try:
            async with self.session_factory() as db:
                outcome = await self._process(db, job, lock)
                await db.commit()
        finally:
            try:
                await self.scheduler.locks.release(lock)
            except Exception as e:
                logger.bind(job_id=job.id, error=str(e)).error("build_lock_release_failed")

        if outcome.status == BuildJobStatus.FAILED and outcome.retryable:
            await self._schedule_retry(job)

        async with self.session_factory() as db:
            return await self.scheduler.get_job(db, job.id)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll for jobs until ``stop`` is set."""
        stop = stop or asyncio.Event()
        self.artifacts_root.mkdir(parents=True, exist_ok=True)
        logger.bind(
            worker=self.worker_id,
            artifacts_root=str(self.artifacts_root),
            image=self.settings.android_builder_image,
        ).info("build_worker_started")

        while not stop.is_set():
            try:
                job = await self.run_once()
            except Exception as e:
                logger.bind(worker=self.worker_id, error=str(e)).exception("build_worker_tick_failed")
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.settings.worker_poll_seconds)
                except TimeoutError:
                    pass

        logger.bind(worker=self.worker_id).info("build_worker_stopped")

    async def _schedule_retry(self, job: BuildJob) -> None:
        max_attempts = self.settings.max_build_attempts
        if job.attempts >= max_attempts:
            logger.bind(job_id=job.id, app_id=job.app_id, attempts=job.attempts, max=max_attempts).warning(
                "build_permanently_failed"
            )
            return

        delay = self.settings.build_retry_backoff_seconds * job.attempts
        if delay > 0:
            await asyncio.sleep(delay)

        async with self.session_factory() as db:
            requeued = await self.scheduler.enqueue(db, job.app_id, job.platform)
            await db.commit()
        logger.bind(job_id=requeued.id, app_id=job.app_id, next_attempt=requeued.attempts).info(
            "build_retry_scheduled"
        )

    # -- Processing ---------------------------------------------------------

    async def _process(self, db: AsyncSession, job: BuildJob, lock: LockToken) -> JobOutcome:
        app = await db.get(App, job.app_id)
        if app is None:
            await self.scheduler.mark_terminal(db, job.id, BuildJobStatus.FAILED, "App not found", lock.token)
            return JobOutcome(BuildJobStatus.FAILED)

        try:
            if job.platform == BuildPlatform.IOS:
                return await self._build_ios(db, job, lock, app)
            return await self._build_android(db, job, lock, app)
        except Exception as e:
            logger.bind(job_id=job.id, app_id=app.id, error=str(e)).exception("build_crashed")
            return await self._fail(db, job, lock, app, str(e) or "Build failed", logs="", retryable=True)

    def _tail(self, logs: str) -> str:
        return logs[-self.config.build.log_tail_chars :]

    async def _fail(
        self,
        db: AsyncSession,
        job: BuildJob,
        lock: LockToken,
        app: App,
        message: str,
        logs: str,
        retryable: bool,
        validation: dict | None = None,
    ) -> JobOutcome:
        applied = await self.scheduler.mark_terminal(
            db, job.id, BuildJobStatus.FAILED, message, lock.token, validation=validation
        )
        if applied:
            will_retry = retryable and job.attempts < self.settings.max_build_attempts
            app.build_error = "Build failed. Retrying..." if will_retry else message
            app.build_logs = self._tail(logs)
            app.last_build_at = utc_now()
            await db.flush()
        logger.bind(job_id=job.id, app_id=app.id, error=message, attempts=job.attempts).warning("build_failed")
        return JobOutcome(BuildJobStatus.FAILED, retryable=retryable and applied)

    async def _build_android(self, db: AsyncSession, job: BuildJob, lock: LockToken, app: App) -> JobOutcome:
        package_name = app.package_name or package_name_for(app.id, self.config.build.package_prefix)
        version_code = (app.version_code or 0) + 1
        features = {**self.config.build.default_features, **(app.features or {})}

        logs = f"[{utc_now().isoformat()}] Starting Android build for {app.name}\n"
        logs += f"[{utc_now().isoformat()}] Package: {package_name}\n"
        logs += f"[{utc_now().isoformat()}] Version Code: {version_code}\n"

        build_config = AppBuildConfig(
            app_id=app.id,
            app_name=app.name,
            package_name=package_name,
            website_url=app.website_url,
            version_code=version_code,
            theme_color=app.theme_color,
            features=features,
            icon_glyph=app.icon_glyph,
        )

        work_dir = Path(tempfile.mkdtemp(prefix=f"appforge-build-{job.id}-"))
        try:
            loop = asyncio.get_running_loop()
            try:
                project_dir = await loop.run_in_executor(
                    None, self.generator.generate, build_config, work_dir
                )
            except BuildConfigurationError as e:
                return await self._fail(db, job, lock, app, e.message, logs, retryable=False)

            logs += f"[{utc_now().isoformat()}] Project generated. Starting Gradle build...\n"
            build: GradleBuildResult = await self.gradle_runner(
                self.settings.android_builder_image,
                project_dir,
                self.config.build.gradle_task,
                self.settings.build_timeout_seconds,
            )
            logs += "\n=== Gradle Build Output ===\n" + build.output

            if not build.ok:
                return await self._fail(db, job, lock, app, "Android build failed", logs, retryable=True)

            apk_src = build.apk_path(project_dir)
            if not apk_src.is_file():
                return await self._fail(db, job, lock, app, "Build produced no APK", logs, retryable=True)

            app_dir = self.artifacts_root / app.id
            app_dir.mkdir(parents=True, exist_ok=True)
            apk_dest = _copy_atomic(apk_src, app_dir / f"{job.id}.apk")
            aab_src = build.aab_path(project_dir)
            aab_dest = _copy_atomic(aab_src, app_dir / f"{job.id}.aab") if aab_src.is_file() else None
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        verdict = await self.inspector.inspect(
            aab_dest or apk_dest,
            package_name,
            app.published_version_code,
        )
        validation = verdict.model_dump()
        if not verdict.valid:
            # Rejected artifacts are not kept
            _discard(apk_dest, aab_dest)
            logs += "\n=== Artifact validation ===\n" + "\n".join(verdict.errors) + "\n"
            return await self._fail(
                db,
                job,
                lock,
                app,
                "Artifact validation failed: " + "; ".join(verdict.errors),
                logs,
                retryable=False,
                validation=validation,
            )

        applied = await self.scheduler.mark_terminal(
            db, job.id, BuildJobStatus.SUCCEEDED, None, lock.token, validation=validation
        )
        if applied:
            app.artifact_path = apk_dest.relative_to(self.artifacts_root).as_posix()
            app.artifact_mime = APK_MIME
            app.artifact_size = apk_dest.stat().st_size
            app.build_error = None
            app.build_logs = self._tail(logs)
            app.last_build_at = utc_now()
            app.version_code = version_code
            app.package_name = package_name
            await db.flush()
            self.cleanup_artifacts(app.id, keep={apk_dest, aab_dest} - {None})
        else:
            _discard(apk_dest, aab_dest)

        return JobOutcome(BuildJobStatus.SUCCEEDED if applied else BuildJobStatus.FAILED)

    async def _build_ios(self, db: AsyncSession, job: BuildJob, lock: LockToken, app: App) -> JobOutcome:
        self._wakeups[job.id] = asyncio.Event()
        try:
            return await self._run_remote_build(db, job, lock, app)
        finally:
            self._wakeups.pop(job.id, None)

    async def _run_remote_build(self, db: AsyncSession, job: BuildJob, lock: LockToken, app: App) -> JobOutcome:
        if not self.bridge.is_configured():
            return await self._fail(db, job, lock, app, "iOS builds not configured", "", retryable=False)

        bundle_id = app.bundle_id or app.package_name or package_name_for(app.id, self.config.build.package_prefix)
        version_code = (app.version_code or 0) + 1
        dispatched_at = utc_now()

        trigger = await self.bridge.trigger(
            RemoteBuildConfig(
                app_id=app.id,
                app_name=app.name,
                bundle_id=bundle_id,
                website_url=app.website_url,
                version_code=version_code,
            ),
            dispatched_at=dispatched_at,
        )
        if trigger.outcome == TriggerOutcome.NOT_CONFIGURED:
            return await self._fail(db, job, lock, app, "iOS builds not configured", "", retryable=False)
        if not trigger.accepted:
            return await self._fail(
                db, job, lock, app, trigger.error or "iOS build trigger failed", "", retryable=True
            )

        loop = asyncio.get_running_loop()
        # Stop before the build lease runs out so the terminal write still owns the job
        lease_left = (lock.expires_at - utc_now()).total_seconds() - self.settings.remote_build_poll_seconds
        deadline = loop.time() + max(0.0, min(self.settings.remote_build_timeout_seconds, lease_left))

        run_id = trigger.run_id
        while run_id is None and loop.time() < deadline:
            await self._pause(job.id)
            # The build callback may already have reported the run
            current = await self.scheduler.get_job(db, job.id)
            run_id = (current.remote_run_id if current else None) or await self.bridge.resolve_run_id(
                dispatched_after=dispatched_at
            )
        if run_id is None:
            return await self._fail(db, job, lock, app, "Unable to locate remote build run", "", retryable=True)

        await self.scheduler.record_remote_run(db, job.id, lock.token, run_id)
        await db.commit()
        logs = f"iOS build triggered. GitHub Actions run ID: {run_id}\n"

        run = None
        while True:
            run = await self.bridge.poll_status(run_id)
            if run is not None and run.is_completed:
                break
            if loop.time() >= deadline:
                return await self._fail(db, job, lock, app, "Remote build timed out", logs, retryable=False)
            await self._pause(job.id)

        if not run.succeeded:
            conclusion = run.conclusion.value if run.conclusion else "unknown"
            return await self._fail(
                db, job, lock, app, f"Remote build finished with conclusion {conclusion}", logs, retryable=True
            )

        app_dir = self.artifacts_root / app.id
        archive = app_dir / f"{job.id}.zip"
        if not await self.bridge.fetch_artifact(run_id, archive):
            return await self._fail(db, job, lock, app, "Remote build artifact download failed", logs, retryable=True)

        ipa = await loop.run_in_executor(None, self.bridge.extract_ipa, archive, app_dir / f"{job.id}.ipa")
        archive.unlink(missing_ok=True)
        if ipa is None:
            return await self._fail(db, job, lock, app, "No .ipa found in build artifact", logs, retryable=False)

        logs += f"Downloaded {ipa.name} ({ipa.stat().st_size} bytes)\n"
        applied = await self.scheduler.mark_terminal(db, job.id, BuildJobStatus.SUCCEEDED, None, lock.token)
        if applied:
            app.bundle_id = bundle_id
            app.build_error = None
            app.build_logs = self._tail(logs)
            app.last_build_at = utc_now()
            await db.flush()
            self.cleanup_artifacts(app.id, keep={ipa})

        return JobOutcome(BuildJobStatus.SUCCEEDED if applied else BuildJobStatus.FAILED)

    # -- Retention ----------------------------------------------------------

    def cleanup_artifacts(self, app_id: str, keep: set[Path] | None = None) -> int:
        """
        Prune old artifacts of one app, per file type.

        The newest ``max_artifacts_per_app`` files are kept, and the newest
        file is never removed. Older files are removed once past
        ``artifact_retention_days``.
        """
        retention = self.config.retention
        app_dir = self.artifacts_root / app_id
        if not app_dir.is_dir():
            return 0

        keep_resolved = {p.resolve() for p in keep or set()}
        cutoff = time.time() - retention.artifact_retention_days * 86400
        keep_n = max(1, retention.max_artifacts_per_app)
        deleted = 0

        for suffix in ARTIFACT_SUFFIXES:
            files = sorted(
                (p for p in app_dir.iterdir() if p.is_file() and p.suffix.lower() == suffix),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
            for index, path in enumerate(files):
                if path.resolve() in keep_resolved or index == 0:
                    continue
                if index >= keep_n or path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    deleted += 1

        if deleted:
            logger.bind(app_id=app_id, deleted=deleted).info("artifacts_pruned")
        return deleted

    async def run_retention(self) -> dict[str, int]:
        """Purge finished jobs past retention and prune every app's artifacts."""
        retention = self.config.retention
        async with self.session_factory() as db:
            purged = await self.scheduler.purge_finished(db, retention.build_job_retention_days)
            await db.commit()

        pruned = 0
        if self.artifacts_root.is_dir():
            for app_dir in sorted(p for p in self.artifacts_root.iterdir() if p.is_dir()):
                pruned += self.cleanup_artifacts(app_dir.name)

        logger.bind(jobs_purged=purged, artifacts_pruned=pruned).info("retention_cleanup_completed")
        return {"jobs_purged": purged, "artifacts_pruned": pruned}


def _copy_atomic(src: Path, dest: Path) -> Path:
    partial = dest.with_name(dest.name + ".part")
    shutil.copyfile(src, partial)
    os.replace(partial, dest)
    return dest


def _discard(*paths: Path | None) -> None:
    for path in paths:
        if path is not None:
            path.unlink(missing_ok=True)
