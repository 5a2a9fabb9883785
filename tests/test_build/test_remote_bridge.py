"""Tests for the GitHub Actions remote build bridge."""

import json
import zipfile
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

from appforge.build.remote import GitHubBuildBridge, RunNotFoundError
from appforge.core.datetime_utils import utc_now
from appforge.core.retry import RetryConfig
from appforge.schemas.remote_build import (
    RemoteBuildConfig,
    RunConclusion,
    RunStatus,
    TriggerOutcome,
)

pytestmark = pytest.mark.asyncio

WORKFLOW = "/repos/acme/builds/actions/workflows/ios-build.yml"
RUNS = "/repos/acme/builds/actions/runs"
NO_WAIT = RetryConfig(
    max_attempts=2,
    initial_delay=0.0,
    backoff_base=0.0,
    backoff_max=0.0,
    retryable_exceptions=(RunNotFoundError, httpx.HTTPError),
)


def iso(dt) -> str:
    return dt.replace(microsecond=0).isoformat() + "Z"


class FakeGitHub:
    """Routes requests to canned GitHub API responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.dispatch_status = 204
        self.runs: list[dict] = [{"id": 987, "created_at": iso(utc_now())}]
        self.run = {"id": 987, "status": "completed", "conclusion": "success"}
        self.run_status_code = 200
        self.artifacts = [{"id": 1, "archive_download_url": "https://api.github.com/download/1"}]
        self.download_status = 200
        self.download_body = b"zip-bytes"
        self.raise_error: Exception | None = None
        # Replace a whole reply body, e.g. with HTML from a proxy error page
        self.bodies: dict[str, object] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error:
            raise self.raise_error

        path = request.url.path
        if path in self.bodies:
            body = self.bodies[path]
            if isinstance(body, bytes):
                return httpx.Response(200, content=body, headers={"content-type": "text/html"})
            return httpx.Response(200, json=body)
        if path == f"{WORKFLOW}/dispatches":
            return httpx.Response(self.dispatch_status)
        if path == f"{WORKFLOW}/runs":
            return httpx.Response(200, json={"workflow_runs": self.runs})
        if path == f"{RUNS}/987/artifacts":
            return httpx.Response(200, json={"artifacts": self.artifacts})
        if path == f"{RUNS}/987":
            return httpx.Response(self.run_status_code, json=self.run)
        if path == "/download/1":
            return httpx.Response(self.download_status, content=self.download_body)
        return httpx.Response(404)


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def configured_settings(test_settings):
    return test_settings.model_copy(
        update={
            "github_owner": "acme",
            "github_repo": "builds",
            "github_token": "ghp_test",
            "ios_build_callback_url": "https://forge.example.com/api/ios/callback",
        }
    )


@pytest.fixture
def bridge(configured_settings, github: FakeGitHub) -> GitHubBuildBridge:
    return GitHubBuildBridge(
        configured_settings,
        transport=httpx.MockTransport(github),
        lookup_retry=NO_WAIT,
    )


BUILD = RemoteBuildConfig(
    app_id="app-1",
    app_name="Shop",
    bundle_id="com.appforge.shop",
    website_url="https://shop.example.com",
    version_code=4,
)


class TestTrigger:
    """Tests for workflow dispatch."""

    async def test_not_configured_makes_no_request(self, test_settings, github: FakeGitHub):
        bridge = GitHubBuildBridge(test_settings, transport=httpx.MockTransport(github))
        result = await bridge.trigger(BUILD)

        assert result.outcome == TriggerOutcome.NOT_CONFIGURED
        assert "GITHUB_TOKEN" in result.error
        assert github.requests == []

    async def test_accepted_with_run_id(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        result = await bridge.trigger(BUILD, dispatched_at=utc_now())

        assert result.accepted
        assert result.run_id == "987"

    async def test_dispatch_payload(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        """Inputs are strings and include the callback URL."""
        await bridge.trigger(BUILD)

        dispatch = github.requests[0]
        assert dispatch.method == "POST"
        assert dispatch.headers["Authorization"] == "Bearer ghp_test"
        assert dispatch.headers["X-GitHub-Api-Version"] == "2022-11-28"
        body = json.loads(dispatch.content)
        assert body["ref"] == "main"
        assert body["inputs"] == {
            "app_id": "app-1",
            "app_name": "Shop",
            "bundle_id": "com.appforge.shop",
            "website_url": "https://shop.example.com",
            "version_code": "4",
            "callback_url": "https://forge.example.com/api/ios/callback",
        }

    async def test_accepted_without_run_id(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        """A run that never shows up leaves run_id empty; the dispatch still counts."""
        github.runs = []
        result = await bridge.trigger(BUILD, dispatched_at=utc_now())

        assert result.outcome == TriggerOutcome.ACCEPTED
        assert result.run_id is None

    async def test_older_run_is_not_matched(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        """A run created well before the dispatch belongs to someone else."""
        github.runs = [{"id": 5, "created_at": iso(utc_now() - timedelta(minutes=10))}]
        result = await bridge.trigger(BUILD, dispatched_at=utc_now())

        assert result.accepted
        assert result.run_id is None

    async def test_rejected_status(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.dispatch_status = 422
        result = await bridge.trigger(BUILD)

        assert result.outcome == TriggerOutcome.REJECTED
        assert result.error == "GitHub API error: 422"

    async def test_transport_error_is_rejected(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        """Network failures come back as a result, never as an exception."""
        github.raise_error = httpx.ConnectError("connection refused")
        result = await bridge.trigger(BUILD)

        assert result.outcome == TriggerOutcome.REJECTED
        assert result.error.startswith("Failed to trigger build")


class TestResolveRunId:
    """Tests for the broader run lookup."""

    async def test_matches_recent_run(self, bridge: GitHubBuildBridge):
        assert await bridge.resolve_run_id(dispatched_after=utc_now()) == "987"

    async def test_no_match(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.runs = []
        assert await bridge.resolve_run_id(dispatched_after=utc_now()) is None


class TestPollStatus:
    """Tests for run status polling."""

    async def test_requires_run_id(self, bridge: GitHubBuildBridge):
        with pytest.raises(ValueError):
            await bridge.poll_status(None)

    async def test_completed_success(self, bridge: GitHubBuildBridge):
        run = await bridge.poll_status("987")

        assert run.status == RunStatus.COMPLETED
        assert run.conclusion == RunConclusion.SUCCESS
        assert run.succeeded

    async def test_in_progress_has_no_conclusion(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.run = {"id": 987, "status": "in_progress", "conclusion": None}
        run = await bridge.poll_status("987")

        assert run.status == RunStatus.IN_PROGRESS
        assert run.conclusion is None
        assert not run.is_completed

    async def test_timed_out_is_failure(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.run = {"id": 987, "status": "completed", "conclusion": "timed_out"}
        run = await bridge.poll_status("987")
        assert run.conclusion == RunConclusion.FAILURE

    async def test_unreadable_status_is_none(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.run_status_code = 500
        assert await bridge.poll_status("987") is None


class TestFetchArtifact:
    """Tests for artifact download."""

    async def test_downloads_first_artifact(self, bridge: GitHubBuildBridge, tmp_path: Path):
        destination = tmp_path / "out" / "build.zip"

        assert await bridge.fetch_artifact("987", destination) is True
        assert destination.read_bytes() == b"zip-bytes"
        assert not (tmp_path / "out" / "build.zip.part").exists()

    async def test_no_artifacts(self, bridge: GitHubBuildBridge, github: FakeGitHub, tmp_path: Path):
        github.artifacts = []
        destination = tmp_path / "build.zip"

        assert await bridge.fetch_artifact("987", destination) is False
        assert not destination.exists()

    async def test_failed_download_leaves_nothing(
        self, bridge: GitHubBuildBridge, github: FakeGitHub, tmp_path: Path
    ):
        github.download_status = 500
        destination = tmp_path / "build.zip"

        assert await bridge.fetch_artifact("987", destination) is False
        assert not destination.exists()
        assert not (tmp_path / "build.zip.part").exists()


GARBLED = [
    pytest.param(b"<html><body>502 Bad Gateway</body></html>", id="html"),
    pytest.param([{"id": 987}], id="list"),
]


class TestGarbledReplies:
    """Bodies that are not a JSON object are treated as unreadable, never raised."""

    @pytest.mark.parametrize("body", GARBLED)
    async def test_trigger_still_accepted(self, bridge: GitHubBuildBridge, github: FakeGitHub, body):
        """Once the dispatch is in, a bad runs listing only loses the run id."""
        github.bodies[f"{WORKFLOW}/runs"] = body
        result = await bridge.trigger(BUILD, dispatched_at=utc_now())

        assert result.outcome == TriggerOutcome.ACCEPTED
        assert result.run_id is None
        dispatches = [r for r in github.requests if r.url.path.endswith("/dispatches")]
        assert len(dispatches) == 1

    @pytest.mark.parametrize("body", GARBLED)
    async def test_resolve_run_id(self, bridge: GitHubBuildBridge, github: FakeGitHub, body):
        github.bodies[f"{WORKFLOW}/runs"] = body
        assert await bridge.resolve_run_id(dispatched_after=utc_now()) is None

    async def test_runs_entries_that_are_not_objects(self, bridge: GitHubBuildBridge, github: FakeGitHub):
        github.runs = ["987", {"id": 988, "created_at": 12345}]
        assert await bridge.resolve_run_id(dispatched_after=utc_now()) == "988"

    @pytest.mark.parametrize("body", GARBLED)
    async def test_poll_status(self, bridge: GitHubBuildBridge, github: FakeGitHub, body):
        github.bodies[f"{RUNS}/987"] = body
        assert await bridge.poll_status("987") is None

    @pytest.mark.parametrize("body", GARBLED)
    async def test_fetch_artifact(
        self, bridge: GitHubBuildBridge, github: FakeGitHub, tmp_path: Path, body
    ):
        github.bodies[f"{RUNS}/987/artifacts"] = body
        destination = tmp_path / "build.zip"

        assert await bridge.fetch_artifact("987", destination) is False
        assert not destination.exists()

    async def test_artifact_entry_that_is_not_an_object(
        self, bridge: GitHubBuildBridge, github: FakeGitHub, tmp_path: Path
    ):
        github.artifacts = ["https://api.github.com/download/1"]
        assert await bridge.fetch_artifact("987", tmp_path / "build.zip") is False


class TestExtractIpa:
    """Tests for pulling the .ipa out of an artifact archive."""

    async def test_extracts_ipa(self, tmp_path: Path):
        archive = tmp_path / "artifact.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("build.log", "ok")
            zf.writestr("Runner.ipa", b"ipa-bytes")

        extracted = GitHubBuildBridge.extract_ipa(archive, tmp_path / "job.ipa")

        assert extracted == tmp_path / "job.ipa"
        assert extracted.read_bytes() == b"ipa-bytes"

    async def test_archive_without_ipa(self, tmp_path: Path):
        archive = tmp_path / "artifact.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("build.log", "failed")

        assert GitHubBuildBridge.extract_ipa(archive, tmp_path / "job.ipa") is None

    async def test_not_a_zip(self, tmp_path: Path):
        archive = tmp_path / "artifact.zip"
        archive.write_bytes(b"not a zip")
        assert GitHubBuildBridge.extract_ipa(archive, tmp_path / "job.ipa") is None
