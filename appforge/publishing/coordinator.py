"""
Publishing a built bundle to a Google Play track.

The publish is four remote steps against one edit session:
1. edits.insert
2. edits.bundles.upload
3. edits.tracks.update
4. edits.commit

It is not atomic. A failure aborts the attempt and the open edit is left for
Play to expire; nothing is visible to users until the commit succeeds.
The whole sequence runs under the app's ``publish:<app_id>`` lock, and a
publish is refused while the app's build lock is live. Only the bundle of
the app's latest succeeded Android build is ever uploaded.
"""

from collections.abc import Callable
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from appforge.config import PublishingConfig, Settings, get_config, get_settings
from appforge.core.datetime_utils import utc_now
from appforge.core.errors import (
    ArtifactMissingError,
    LockConflictError,
    NotFoundError,
    UpstreamApiError,
    ValidationError,
)
from appforge.core.locks import LockManager, build_lock_name, publish_lock_name
from appforge.core.logging import get_logger
from appforge.core.security import decrypt_token
from appforge.jobs.scheduler import BuildJobScheduler
from appforge.models.app import App, PublishingMode
from appforge.models.build_job import BuildPlatform
from appforge.models.publisher_account import PublisherAccount
from appforge.publishing.credentials import resolve_publish_credentials
from appforge.publishing.storefront import Storefront, StorefrontFactory, google_play_storefront
from appforge.schemas.publish import (
    PromoteResult,
    PublishCredentials,
    PublishResult,
    TrackRelease,
    TrackStatus,
)

logger = get_logger(__name__)

TESTING_URL = "https://play.google.com/apps/testing/{package}"


def resolve_aab_path(app_id: str, job_id: str, artifacts_root: Path) -> Path | None:
    """
    The bundle built by job ``job_id``: ``<artifacts_root>/<app_id>/<job_id>.aab``.

    None when the file is gone or the path would leave the artifacts root.
    """
    root = artifacts_root.resolve()
    path = (root / app_id / f"{job_id}.aab").resolve()
    if not path.is_relative_to(root) or not path.is_file():
        return None
    return path


def _version_codes(releases: list[dict]) -> list[int]:
    codes: list[int] = []
    for release in releases:
        for raw in release.get("versionCodes") or []:
            try:
                code = int(raw)
            except (TypeError, ValueError):
                continue
            if code > 0:
                codes.append(code)
    return codes


class PublishCoordinator:
    """Drives storefront publishes for apps, one at a time per app."""

    def __init__(
        self,
        locks: LockManager,
        storefront_factory: StorefrontFactory = google_play_storefront,
        settings: Settings | None = None,
        config: PublishingConfig | None = None,
        decrypt: Callable[[str], str] = decrypt_token,
        jobs: BuildJobScheduler | None = None,
    ) -> None:
        self.locks = locks
        self.storefront_factory = storefront_factory
        self.settings = settings or get_settings()
        self.jobs = jobs or BuildJobScheduler(locks, self.settings)
        self.config = config or get_config().publishing
        self.decrypt = decrypt

    @property
    def artifacts_root(self) -> Path:
        return Path(self.settings.artifacts_dir)

    async def _load_app(self, db: AsyncSession, app_id: str) -> App:
        app = await db.get(App, app_id)
        if app is None:
            raise NotFoundError(f"App {app_id} not found")
        return app

    async def _credentials(self, db: AsyncSession, app: App) -> PublishCredentials:
        refresh_token_enc = None
        if app.publishing_mode == PublishingMode.USER:
            account = await db.get(PublisherAccount, app.owner_id)
            refresh_token_enc = account.refresh_token_enc if account else None
        return resolve_publish_credentials(app.publishing_mode, refresh_token_enc, self.decrypt)

    async def _storefront_for(self, db: AsyncSession, app: App) -> Storefront:
        return self.storefront_factory(await self._credentials(db, app))

    async def publish_internal(
        self,
        db: AsyncSession,
        app_id: str,
        release_name: str | None = None,
    ) -> PublishResult:
        """
        Publish the app's latest bundle to the internal testing track.

        Raises:
            NotFoundError: Unknown app
            LockConflictError: A build or another publish is in progress
            ArtifactMissingError: No succeeded Android build, or its bundle is gone
            CredentialError: User-mode app without a usable Play connection
            ConfigurationError: Central identity not configured
            UpstreamApiError: A Play API step failed
        """
        app = await self._load_app(db, app_id)

        build_lock = build_lock_name(app_id)
        if await self.locks.is_locked(build_lock):
            raise LockConflictError(build_lock)

        package_name = (app.package_name or "").strip()
        if not package_name:
            raise ArtifactMissingError("App has no build to publish yet")

        build = await self.jobs.latest_succeeded(db, app_id, BuildPlatform.ANDROID)
        if build is None:
            raise ArtifactMissingError("No successful Android build to publish")

        aab_path = resolve_aab_path(app_id, build.id, self.artifacts_root)
        if aab_path is None:
            raise ArtifactMissingError("AAB artifact not found")

        track = self.config.default_track

        async def publish() -> PublishResult:
            storefront = await self._storefront_for(db, app)
            return await self._publish_bundle(storefront, package_name, aab_path, track, release_name)

        result = await self.locks.run_exclusive(
            publish_lock_name(app_id),
            self.settings.publish_lock_ttl_seconds,
            publish,
        )

        app.published_version_code = result.version_code
        await db.flush()

        logger.bind(
            app_id=app_id,
            job_id=build.id,
            package=package_name,
            track=track,
            version_code=result.version_code,
        ).info("app_published")
        return result

    async def _publish_bundle(
        self,
        storefront: Storefront,
        package_name: str,
        aab_path: Path,
        track: str,
        release_name: str | None,
    ) -> PublishResult:
        edit_id = await storefront.insert_edit(package_name)

        version_code = await storefront.upload_bundle(package_name, edit_id, aab_path)
        if version_code is None or version_code <= 0:
            raise UpstreamApiError("Bundle upload succeeded but versionCode is missing")

        await storefront.update_track(
            package_name,
            edit_id,
            track,
            [
                {
                    "name": release_name or f"Build {version_code}",
                    "status": self.config.release_status,
                    "versionCodes": [str(version_code)],
                }
            ],
        )
        await storefront.commit_edit(package_name, edit_id)

        return PublishResult(
            package_name=package_name,
            track=track,
            version_code=version_code,
            testing_url=TESTING_URL.format(package=package_name) if track == "internal" else None,
            committed_at=utc_now(),
        )

    async def promote(
        self,
        db: AsyncSession,
        app_id: str,
        from_track: str,
        to_track: str,
    ) -> PromoteResult:
        """Copy the version codes released on ``from_track`` to ``to_track``."""
        if from_track == to_track:
            raise ValidationError(["fromTrack and toTrack must differ"])

        app = await self._load_app(db, app_id)
        package_name = (app.package_name or "").strip()
        if not package_name:
            raise ArtifactMissingError("App has no build to promote yet")

        async def promote() -> PromoteResult:
            storefront = await self._storefront_for(db, app)
            edit_id = await storefront.insert_edit(package_name)

            source = await storefront.get_track(package_name, edit_id, from_track)
            version_codes = sorted(set(_version_codes(source.get("releases") or [])), reverse=True)
            if not version_codes:
                raise ValidationError([f"No versionCodes found on source track ({from_track})"])

            await storefront.update_track(
                package_name,
                edit_id,
                to_track,
                [
                    {
                        "name": f"Promoted from {from_track}",
                        "status": self.config.release_status,
                        "versionCodes": [str(v) for v in version_codes],
                    }
                ],
            )
            await storefront.commit_edit(package_name, edit_id)
            return PromoteResult(
                package_name=package_name,
                from_track=from_track,
                to_track=to_track,
                version_codes=version_codes,
                committed_at=utc_now(),
            )

        result = await self.locks.run_exclusive(
            publish_lock_name(app_id),
            self.settings.publish_lock_ttl_seconds,
            promote,
        )
        logger.bind(app_id=app_id, from_track=from_track, to_track=to_track).info("app_promoted")
        return result

    async def release_status(self, db: AsyncSession, app_id: str) -> list[TrackStatus]:
        """Releases on each configured status track. Read-only."""
        app = await self._load_app(db, app_id)
        package_name = (app.package_name or "").strip()
        if not package_name:
            raise ArtifactMissingError("App has no build yet")

        storefront = await self._storefront_for(db, app)
        edit_id = await storefront.insert_edit(package_name)
        statuses: list[TrackStatus] = []
        try:
            for track in self.config.status_tracks:
                try:
                    data = await storefront.get_track(package_name, edit_id, track)
                except UpstreamApiError as e:
                    statuses.append(
                        TrackStatus(track=track, releases=[TrackRelease(name="error", status=e.message)])
                    )
                    continue
                statuses.append(
                    TrackStatus(
                        track=track,
                        releases=[
                            TrackRelease(
                                name=r.get("name"),
                                status=r.get("status"),
                                version_codes=_version_codes([r]),
                            )
                            for r in data.get("releases") or []
                        ],
                    )
                )
        finally:
            try:
                await storefront.delete_edit(package_name, edit_id)
            except UpstreamApiError as e:
                logger.bind(app_id=app_id, error=e.message).warning("play_status_edit_cleanup_failed")

        return statuses
