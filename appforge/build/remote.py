"""
Remote iOS builds on GitHub Actions macOS runners.

A workflow dispatch answers 204 with no body, so the run id is looked up
afterwards from the workflow's most recent runs. That lookup can lose the
race with GitHub's scheduler; callers then re-resolve with
``resolve_run_id`` before polling.

No method here raises on remote failures. Errors come back as
``TriggerResult`` outcomes, ``None`` or ``False``.
"""

import os
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from appforge.config import Settings, get_settings
from appforge.core.datetime_utils import parse_iso_timestamp
from appforge.core.logging import get_logger
from appforge.core.retry import RetryConfig, retry_with_backoff
from appforge.schemas.remote_build import (
    RemoteBuildConfig,
    RemoteBuildRun,
    RunConclusion,
    RunStatus,
    TriggerOutcome,
    TriggerResult,
)

logger = get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"

# Runner clocks and ours may drift apart slightly
CLOCK_SKEW = timedelta(seconds=10)

_STATUS_MAP = {
    "queued": RunStatus.QUEUED,
    "requested": RunStatus.QUEUED,
    "waiting": RunStatus.QUEUED,
    "pending": RunStatus.QUEUED,
    "in_progress": RunStatus.IN_PROGRESS,
    "completed": RunStatus.COMPLETED,
}

_CONCLUSION_MAP = {
    "success": RunConclusion.SUCCESS,
    "failure": RunConclusion.FAILURE,
    "timed_out": RunConclusion.FAILURE,
    "startup_failure": RunConclusion.FAILURE,
    "cancelled": RunConclusion.CANCELLED,
}


class RunNotFoundError(LookupError):
    """No workflow run matching the dispatch is visible yet."""


class MalformedReplyError(ValueError):
    """GitHub answered with a body that is not the JSON object we asked for."""


# Everything a garbled upstream reply can raise while we read it
REPLY_ERRORS = (httpx.HTTPError, ValueError, AttributeError, TypeError)


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedReplyError(f"unparseable reply: {e}") from e
    if not isinstance(data, dict):
        raise MalformedReplyError(f"expected an object, got {type(data).__name__}")
    return data


class GitHubBuildBridge:
    """Trigger, poll and download iOS builds from a GitHub Actions workflow."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        lookup_retry: RetryConfig | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport
        self.timeout = timeout
        self.lookup_retry = lookup_retry or RetryConfig(
            max_attempts=3,
            initial_delay=2.0,
            backoff_base=1.0,
            backoff_max=2.0,
            retryable_exceptions=(RunNotFoundError, httpx.HTTPError),
        )

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.github_owner and s.github_repo and s.github_token and s.ios_build_callback_url)

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.settings.github_owner}/{self.settings.github_repo}"

    @property
    def _workflow_path(self) -> str:
        return f"{self._repo_path}/actions/workflows/{self.settings.github_workflow}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=GITHUB_API_URL,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.settings.github_token}",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            timeout=self.timeout,
            follow_redirects=True,
            transport=self.transport,
        )

    async def trigger(
        self,
        config: RemoteBuildConfig,
        dispatched_at: datetime | None = None,
    ) -> TriggerResult:
        """Dispatch the build workflow and try to resolve its run id."""
        if not self.is_configured():
            return TriggerResult(
                outcome=TriggerOutcome.NOT_CONFIGURED,
                error=(
                    "GitHub Actions not configured. Set GITHUB_OWNER, GITHUB_REPO, "
                    "GITHUB_TOKEN, and IOS_BUILD_CALLBACK_URL environment variables."
                ),
            )

        payload = {
            "ref": self.settings.github_ref,
            "inputs": {
                "app_id": config.app_id,
                "app_name": config.app_name,
                "bundle_id": config.bundle_id,
                "website_url": config.website_url,
                "version_code": str(config.version_code or 1),
                "callback_url": self.settings.ios_build_callback_url,
            },
        }

        try:
            async with self._client() as client:
                response = await client.post(f"{self._workflow_path}/dispatches", json=payload)
                if response.status_code != 204:
                    logger.bind(
                        app_id=config.app_id,
                        status=response.status_code,
                        body=response.text[:500],
                    ).error("remote_build_dispatch_rejected")
                    return TriggerResult(
                        outcome=TriggerOutcome.REJECTED,
                        error=f"GitHub API error: {response.status_code}",
                    )

                run_id = await self._lookup_dispatched_run(client, dispatched_at)
        except httpx.HTTPError as e:
            logger.bind(app_id=config.app_id, error=str(e)).error("remote_build_dispatch_failed")
            return TriggerResult(
                outcome=TriggerOutcome.REJECTED,
                error=f"Failed to trigger build: {e}",
            )

        logger.bind(app_id=config.app_id, run_id=run_id).info("remote_build_dispatched")
        return TriggerResult(outcome=TriggerOutcome.ACCEPTED, run_id=run_id)

    async def _lookup_dispatched_run(
        self,
        client: httpx.AsyncClient,
        dispatched_at: datetime | None,
    ) -> str | None:
        """Short, bounded lookup of the most recent run right after dispatch."""

        async def lookup() -> str:
            run_id = await self._find_run(client, dispatched_at, per_page=1)
            if run_id is None:
                raise RunNotFoundError("dispatched run not visible yet")
            return run_id

        try:
            return await retry_with_backoff(
                lookup,
                config=self.lookup_retry,
                operation_name="remote_build_run_lookup",
            )
        except (RunNotFoundError, *REPLY_ERRORS) as e:
            # The dispatch went through; the run id is re-resolved before polling
            logger.bind(error=str(e)).warning("remote_build_run_lookup_failed")
            return None

    async def _find_run(
        self,
        client: httpx.AsyncClient,
        dispatched_after: datetime | None,
        per_page: int,
    ) -> str | None:
        response = await client.get(
            f"{self._workflow_path}/runs",
            params={"per_page": per_page, "event": "workflow_dispatch"},
        )
        response.raise_for_status()

        runs = _json_object(response).get("workflow_runs") or []
        if not isinstance(runs, list):
            raise MalformedReplyError("workflow_runs is not a list")

        for run in runs:
            if not isinstance(run, dict):
                continue
            if dispatched_after is not None:
                created_at = parse_iso_timestamp(run.get("created_at"))
                if created_at is not None and created_at < dispatched_after - CLOCK_SKEW:
                    # Runs are newest first; everything after this is older
                    return None
            if run.get("id") is not None:
                return str(run["id"])
        return None

    async def resolve_run_id(
        self,
        dispatched_after: datetime | None = None,
        per_page: int = 10,
    ) -> str | None:
        """Most recent run created at or after ``dispatched_after``."""
        if not self.is_configured():
            return None
        try:
            async with self._client() as client:
                return await self._find_run(client, dispatched_after, per_page=per_page)
        except REPLY_ERRORS as e:
            logger.bind(error=str(e)).warning("remote_build_run_resolve_failed")
            return None

    async def poll_status(self, run_id: str | None) -> RemoteBuildRun | None:
        """Read a run's status. None when it could not be read."""
        if not run_id:
            raise ValueError("run_id is required; resolve it before polling")
        if not self.is_configured():
            return None

        try:
            async with self._client() as client:
                response = await client.get(f"{self._repo_path}/actions/runs/{run_id}")
                response.raise_for_status()
                data = _json_object(response)
        except REPLY_ERRORS as e:
            logger.bind(run_id=run_id, error=str(e)).warning("remote_build_poll_failed")
            return None

        status = _STATUS_MAP.get(str(data.get("status") or ""), RunStatus.QUEUED)
        conclusion = None
        if status == RunStatus.COMPLETED:
            conclusion = _CONCLUSION_MAP.get(str(data.get("conclusion") or ""), RunConclusion.UNKNOWN)

        return RemoteBuildRun(run_id=str(run_id), status=status, conclusion=conclusion)

    async def fetch_artifact(self, run_id: str, destination: Path) -> bool:
        """Download the run's first artifact archive to ``destination``."""
        if not self.is_configured():
            return False

        partial = destination.with_name(destination.name + ".part")
        try:
            async with self._client() as client:
                response = await client.get(f"{self._repo_path}/actions/runs/{run_id}/artifacts")
                response.raise_for_status()
                artifacts = _json_object(response).get("artifacts") or []
                if not isinstance(artifacts, list) or not artifacts:
                    logger.bind(run_id=run_id).warning("remote_build_no_artifacts")
                    return False

                first = artifacts[0]
                download_url = first.get("archive_download_url") if isinstance(first, dict) else None
                if not isinstance(download_url, str) or not download_url:
                    return False

                destination.parent.mkdir(parents=True, exist_ok=True)
                async with client.stream("GET", download_url) as download:
                    download.raise_for_status()
                    with open(partial, "wb") as f:
                        async for chunk in download.aiter_bytes():
                            f.write(chunk)

            os.replace(partial, destination)
        except (*REPLY_ERRORS, OSError) as e:
            logger.bind(run_id=run_id, error=str(e)).error("remote_build_artifact_download_failed")
            partial.unlink(missing_ok=True)
            return False

        logger.bind(run_id=run_id, path=str(destination)).info("remote_build_artifact_downloaded")
        return True

    @staticmethod
    def extract_ipa(archive: Path, destination: Path) -> Path | None:
        """Extract the first ``.ipa`` from a downloaded artifact archive."""
        try:
            with zipfile.ZipFile(archive) as zf:
                member = next(
                    (n for n in zf.namelist() if n.lower().endswith(".ipa") and not n.endswith("/")),
                    None,
                )
                if member is None:
                    return None

                destination.parent.mkdir(parents=True, exist_ok=True)
                partial = destination.with_name(destination.name + ".part")
                with zf.open(member) as src, open(partial, "wb") as dst:
                    while chunk := src.read(1024 * 1024):
                        dst.write(chunk)
                os.replace(partial, destination)
        except (zipfile.BadZipFile, OSError) as e:
            logger.bind(archive=str(archive), error=str(e)).error("ipa_extraction_failed")
            return None

        return destination
