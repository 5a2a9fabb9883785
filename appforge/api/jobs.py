"""Background job schedule endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel

from appforge.core.scheduler import get_job_schedules

router = APIRouter()


class ScheduleResponse(BaseModel):
    """One registered APScheduler schedule."""

    id: str
    task_id: str
    trigger: str
    next_fire_time: str | None
    last_fire_time: str | None


@router.get("/jobs/schedules", response_model=list[ScheduleResponse])
async def list_schedules() -> list[ScheduleResponse]:
    """List the build-worker and retention schedules with their fire times."""
    schedules = await get_job_schedules()
    return [ScheduleResponse(**s) for s in schedules]
