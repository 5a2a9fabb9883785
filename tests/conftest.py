"""
Pytest configuration and fixtures for AppForge tests.

Provides:
- Async test database with SQLite
- Test client for API testing
- Lock, scheduler and coordinator fixtures on the in-memory lock backend
- Factory fixtures for creating test data
- Fake tool runner and storefront
"""

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from appforge.config import AppConfig, Settings, get_settings
from appforge.core.database import get_db
from appforge.core.datetime_utils import utc_now
from appforge.core.errors import UpstreamApiError
from appforge.core.locks import InMemoryLockBackend, LockManager
from appforge.dependencies import get_job_scheduler, get_publish_coordinator
from appforge.inspection.runner import ToolResult
from appforge.jobs.scheduler import BuildJobScheduler
from appforge.main import app
from appforge.models import Base
from appforge.models.app import App, PublishingMode
from appforge.models.build_job import BuildJob, BuildJobStatus, BuildPlatform
from appforge.publishing.coordinator import PublishCoordinator
from appforge.publishing.storefront import Storefront

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    secret_key: str = "test-secret-key"
    base_url: str = "http://localhost:8000"
    token_encryption_key: str = "test-encryption-key"
    lock_backend: str = "memory"
    lock_acquire_timeout_seconds: float = 0.0
    build_retry_backoff_seconds: float = 0.0
    remote_build_poll_seconds: float = 0.01
    scheduler_enabled: bool = False
    github_owner: str = ""
    github_repo: str = ""
    github_token: str = ""
    ios_build_callback_url: str = ""
    ios_callback_secret: str = "callback-secret"
    google_play_service_account_json: str = ""
    google_play_service_account_b64: str = ""


@pytest.fixture
def test_settings(tmp_path: Path) -> TestSettings:
    """Settings with artifacts under a per-test directory."""
    return TestSettings(artifacts_dir=str(tmp_path / "artifacts"))


@pytest.fixture
def app_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> AppConfig:
    """Config with built-in defaults (no config.yml)."""
    monkeypatch.chdir(tmp_path)
    return AppConfig()


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for code that opens its own sessions (worker, retention)."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def lock_manager() -> LockManager:
    return LockManager(InMemoryLockBackend())


@pytest.fixture
def job_scheduler(lock_manager: LockManager, test_settings: TestSettings) -> BuildJobScheduler:
    return BuildJobScheduler(lock_manager, test_settings)


@pytest.fixture
def fake_storefront() -> "FakeStorefront":
    return FakeStorefront()


@pytest.fixture
def coordinator(
    lock_manager: LockManager,
    job_scheduler: BuildJobScheduler,
    fake_storefront: "FakeStorefront",
    test_settings: TestSettings,
    app_config: AppConfig,
) -> PublishCoordinator:
    def decrypt(envelope: str) -> str:
        if envelope == "bad-envelope":
            raise ValueError("cannot decrypt")
        return "refresh-token"

    return PublishCoordinator(
        lock_manager,
        storefront_factory=lambda credentials: fake_storefront.bind(credentials),
        settings=test_settings,
        config=app_config.publishing,
        decrypt=decrypt,
        jobs=job_scheduler,
    )


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    job_scheduler: BuildJobScheduler,
    coordinator: PublishCoordinator,
    test_settings: TestSettings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database and service overrides."""
    from appforge.core.rate_limit import limiter

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_job_scheduler] = lambda: job_scheduler
    app.dependency_overrides[get_publish_coordinator] = lambda: coordinator

    # Reset rate limiter storage before each test
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def app_factory(db_session: AsyncSession):
    """Factory for creating test apps."""

    async def _create_app(
        name: str = "Test App",
        website_url: str = "https://example.com",
        package_name: str | None = None,
        publishing_mode: PublishingMode = PublishingMode.CENTRAL,
        artifact_path: str | None = None,
        version_code: int = 0,
        published_version_code: int | None = None,
        features: dict | None = None,
    ) -> App:
        record = App(
            id=str(uuid.uuid4()),
            owner_id=str(uuid.uuid4()),
            name=name,
            website_url=website_url,
            package_name=package_name,
            publishing_mode=publishing_mode,
            artifact_path=artifact_path,
            version_code=version_code,
            published_version_code=published_version_code,
            features=features,
        )
        db_session.add(record)
        await db_session.flush()
        return record

    return _create_app


@pytest.fixture
def write_artifact(test_settings: TestSettings):
    """Write a placeholder artifact under the test artifacts root."""

    def _write(app_id: str, name: str, content: bytes = b"PK\x03\x04") -> Path:
        path = Path(test_settings.artifacts_dir) / app_id / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _write


@pytest_asyncio.fixture
async def succeeded_build(db_session: AsyncSession, write_artifact):
    """Record a succeeded Android build and write its apk and aab to disk."""

    async def _create(app: App) -> BuildJob:
        now = utc_now()
        job = BuildJob(
            id=str(uuid.uuid4()),
            app_id=app.id,
            platform=BuildPlatform.ANDROID,
            status=BuildJobStatus.SUCCEEDED,
            created_at=now,
            updated_at=now,
            finished_at=now,
        )
        db_session.add(job)
        write_artifact(app.id, f"{job.id}.apk")
        write_artifact(app.id, f"{job.id}.aab")
        app.artifact_path = f"{app.id}/{job.id}.apk"
        await db_session.flush()
        return job

    return _create


# ============================================================================
# Fakes
# ============================================================================


class FakeToolRunner:
    """
    Scripted replacement for run_tool.

    ``outputs`` maps a tool name (argv[0]) to the ToolResult it returns;
    tools without an entry fail to spawn.
    """

    def __init__(self, outputs: dict[str, ToolResult] | None = None) -> None:
        self.outputs = outputs or {}
        self.calls: list[list[str]] = []

    async def __call__(self, args: list[str]) -> ToolResult:
        self.calls.append(args)
        result = self.outputs.get(args[0])
        if result is None:
            return ToolResult(ok=False, stderr=f"{args[0]}: not found", spawn_failed=True)
        return result

    def called(self, tool: str) -> bool:
        return any(call[0] == tool for call in self.calls)


class FakeStorefront(Storefront):
    """In-memory storefront recording every edit operation."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.credentials: Any = None
        self.version_code: int | None = 42
        self.fail_on: str | None = None
        self.tracks: dict[str, dict[str, Any]] = {}
        self.committed: list[str] = []
        self.deleted: list[str] = []
        self.uploaded: list[Path] = []
        self._edits = 0

    def bind(self, credentials: Any) -> "FakeStorefront":
        self.credentials = credentials
        return self

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if self.fail_on == operation:
            raise UpstreamApiError(f"Google Play {operation} failed", status_code=500)

    async def insert_edit(self, package_name: str) -> str:
        self._record("edits.insert")
        self._edits += 1
        return f"edit-{self._edits}"

    async def upload_bundle(self, package_name: str, edit_id: str, aab_path: Path) -> int | None:
        self._record("edits.bundles.upload")
        self.uploaded.append(aab_path)
        return self.version_code

    async def get_track(self, package_name: str, edit_id: str, track: str) -> dict[str, Any]:
        self._record("edits.tracks.get")
        return self.tracks.get(track, {"track": track, "releases": []})

    async def update_track(
        self,
        package_name: str,
        edit_id: str,
        track: str,
        releases: list[dict[str, Any]],
    ) -> None:
        self._record("edits.tracks.update")
        self.tracks[track] = {"track": track, "releases": releases}

    async def commit_edit(self, package_name: str, edit_id: str) -> None:
        self._record("edits.commit")
        self.committed.append(edit_id)

    async def delete_edit(self, package_name: str, edit_id: str) -> None:
        self._record("edits.delete")
        self.deleted.append(edit_id)


@pytest.fixture
def fake_tool_runner():
    """The FakeToolRunner class, for building scripted runners."""
    return FakeToolRunner
