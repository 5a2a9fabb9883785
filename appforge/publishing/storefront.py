"""
Google Play Developer API (androidpublisher v3) edit operations.

Each method is one remote call. Sequencing them into a publish lives in the
coordinator. The API client is blocking, so calls run in the default
executor.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from appforge.config import Settings, get_settings
from appforge.core.errors import ConfigurationError, CredentialError, UpstreamApiError
from appforge.core.logging import get_logger
from appforge.publishing.credentials import RECONNECT, load_service_account_info
from appforge.schemas.publish import CentralCredentials, PublishCredentials

logger = get_logger(__name__)

ANDROIDPUBLISHER_API_SERVICE_NAME = "androidpublisher"
ANDROIDPUBLISHER_API_VERSION = "v3"
SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


class Storefront(ABC):
    """The edit-session operations a publish is made of."""

    @abstractmethod
    async def insert_edit(self, package_name: str) -> str:
        """Open an edit session and return its id."""
        pass

    @abstractmethod
    async def upload_bundle(self, package_name: str, edit_id: str, aab_path: Path) -> int | None:
        """Upload an AAB into the edit; returns the version code Play assigned."""
        pass

    @abstractmethod
    async def get_track(self, package_name: str, edit_id: str, track: str) -> dict[str, Any]:
        pass

    @abstractmethod
    async def update_track(
        self,
        package_name: str,
        edit_id: str,
        track: str,
        releases: list[dict[str, Any]],
    ) -> None:
        pass

    @abstractmethod
    async def commit_edit(self, package_name: str, edit_id: str) -> None:
        pass

    @abstractmethod
    async def delete_edit(self, package_name: str, edit_id: str) -> None:
        pass


StorefrontFactory = Callable[[PublishCredentials], Storefront]


def describe_http_error(error: HttpError) -> str:
    """``message | code=<status> | reason=<reason>`` for operator logs."""
    bits = [str(getattr(error, "reason", "") or error)]
    status = getattr(error.resp, "status", None)
    if status:
        bits.append(f"code={status}")
    details = getattr(error, "error_details", None)
    if isinstance(details, list) and details and isinstance(details[0], dict):
        reason = details[0].get("reason")
        if reason:
            bits.append(f"reason={reason}")
    return " | ".join(bits)


class GooglePlayStorefront(Storefront):
    """Storefront backed by the androidpublisher API client."""

    def __init__(self, service: Any, user_owned: bool = False) -> None:
        self._service = service
        self.user_owned = user_owned

    @classmethod
    def from_credentials(
        cls,
        credentials: PublishCredentials,
        settings: Settings | None = None,
    ) -> "GooglePlayStorefront":
        settings = settings or get_settings()

        google_credentials: Any
        if isinstance(credentials, CentralCredentials):
            google_credentials = service_account.Credentials.from_service_account_info(
                load_service_account_info(settings),
                scopes=SCOPES,
            )
        else:
            if not settings.google_client_id or not settings.google_client_secret:
                raise ConfigurationError(
                    "Missing GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET for Play OAuth publishing"
                )
            google_credentials = Credentials(
                token=None,
                refresh_token=credentials.refresh_token,
                token_uri=TOKEN_URI,
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                scopes=SCOPES,
            )

        service = build(
            ANDROIDPUBLISHER_API_SERVICE_NAME,
            ANDROIDPUBLISHER_API_VERSION,
            credentials=google_credentials,
            cache_discovery=False,
        )
        return cls(service, user_owned=not isinstance(credentials, CentralCredentials))

    async def _execute(self, operation: str, request: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, request.execute)
        except HttpError as e:
            message = describe_http_error(e)
            logger.bind(operation=operation, error=message).error("play_api_error")
            raise UpstreamApiError(
                f"Google Play {operation} failed",
                status_code=getattr(e.resp, "status", None),
            ) from e
        except RefreshError as e:
            logger.bind(operation=operation, user_owned=self.user_owned, error=str(e)).error(
                "play_token_refresh_failed"
            )
            if self.user_owned:
                raise CredentialError(RECONNECT) from e
            raise UpstreamApiError(
                f"Google Play {operation} failed: service account rejected",
                status_code=401,
            ) from e
        except (GoogleAuthError, OSError) as e:
            # Token endpoint or socket failures; TransportError is a GoogleAuthError
            logger.bind(operation=operation, error=str(e)).error("play_api_transport_error")
            raise UpstreamApiError(f"Google Play {operation} failed: {e}") from e

    async def insert_edit(self, package_name: str) -> str:
        edit = await self._execute(
            "edits.insert",
            self._service.edits().insert(packageName=package_name, body={}),
        )
        edit_id = (edit or {}).get("id")
        if not edit_id:
            raise UpstreamApiError("Google Play edit creation failed")
        return str(edit_id)

    async def upload_bundle(self, package_name: str, edit_id: str, aab_path: Path) -> int | None:
        media = MediaFileUpload(str(aab_path), mimetype="application/octet-stream", resumable=True)
        bundle = await self._execute(
            "edits.bundles.upload",
            self._service.edits()
            .bundles()
            .upload(packageName=package_name, editId=edit_id, media_body=media),
        )
        raw = (bundle or {}).get("versionCode")
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    async def get_track(self, package_name: str, edit_id: str, track: str) -> dict[str, Any]:
        return await self._execute(
            "edits.tracks.get",
            self._service.edits().tracks().get(packageName=package_name, editId=edit_id, track=track),
        ) or {}

    async def update_track(
        self,
        package_name: str,
        edit_id: str,
        track: str,
        releases: list[dict[str, Any]],
    ) -> None:
        await self._execute(
            "edits.tracks.update",
            self._service.edits()
            .tracks()
            .update(
                packageName=package_name,
                editId=edit_id,
                track=track,
                body={"track": track, "releases": releases},
            ),
        )

    async def commit_edit(self, package_name: str, edit_id: str) -> None:
        await self._execute(
            "edits.commit",
            self._service.edits().commit(packageName=package_name, editId=edit_id),
        )

    async def delete_edit(self, package_name: str, edit_id: str) -> None:
        await self._execute(
            "edits.delete",
            self._service.edits().delete(packageName=package_name, editId=edit_id),
        )


def google_play_storefront(credentials: PublishCredentials) -> Storefront:
    return GooglePlayStorefront.from_credentials(credentials)
