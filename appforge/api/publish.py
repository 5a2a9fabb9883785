"""Storefront publishing API endpoints."""

from fastapi import APIRouter

from appforge.dependencies import Coordinator, DBSession
from appforge.schemas.publish import (
    PromoteRequest,
    PromoteResult,
    PublishRequest,
    PublishResult,
    TrackStatus,
)

router = APIRouter()


@router.post("/apps/{app_id}/publish", response_model=PublishResult)
async def publish_app(
    app_id: str,
    db: DBSession,
    coordinator: Coordinator,
    body: PublishRequest | None = None,
) -> PublishResult:
    """
    Publish the app's latest bundle to the internal testing track.

    Returns 409 while a build or another publish for the app is in progress.
    """
    release_name = body.release_name if body else None
    return await coordinator.publish_internal(db, app_id, release_name=release_name)


@router.post("/apps/{app_id}/promote", response_model=PromoteResult)
async def promote_app(
    app_id: str,
    body: PromoteRequest,
    db: DBSession,
    coordinator: Coordinator,
) -> PromoteResult:
    """Copy the releases of one track to another (default internal -> production)."""
    return await coordinator.promote(db, app_id, body.from_track, body.to_track)


@router.get("/apps/{app_id}/releases", response_model=list[TrackStatus])
async def release_status(app_id: str, db: DBSession, coordinator: Coordinator) -> list[TrackStatus]:
    return await coordinator.release_status(db, app_id)
