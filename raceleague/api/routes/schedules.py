"""Recurring schedule route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from raceleague.api.routes import http_error
from raceleague.database.db import get_db_session
from raceleague.models.schemas import (
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
    ScheduleToggle,
)
from raceleague.services import recurring_schedule_service
from raceleague.services.recurring_schedule_service import schedule_to_dict
from raceleague.utils.exceptions import MatchLifecycleError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/recurring-schedules")
async def list_schedules(session: AsyncSession = Depends(get_db_session)):
    schedules = await recurring_schedule_service.list_schedules(session)
    return [schedule_to_dict(schedule) for schedule in schedules]


@router.post("/api/recurring-schedules")
async def create_schedule(
    payload: RecurringScheduleCreate, session: AsyncSession = Depends(get_db_session)
):
    """Create a category's schedule; the coming week of matches is generated right away."""
    try:
        schedule = await recurring_schedule_service.create_schedule(
            session,
            payload.category,
            payload.rules,
            min_players=payload.min_players,
            max_players=payload.max_players,
            name=payload.name,
            notes=payload.notes,
            created_by=payload.created_by,
        )
        return schedule_to_dict(schedule)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error creating recurring schedule: {str(e)}")


@router.get("/api/recurring-schedules/{schedule_id}")
async def get_schedule(schedule_id: int, session: AsyncSession = Depends(get_db_session)):
    try:
        return schedule_to_dict(await recurring_schedule_service.get_schedule(session, schedule_id))
    except MatchLifecycleError as e:
        raise http_error(e)


@router.put("/api/recurring-schedules/{schedule_id}")
async def update_schedule(
    schedule_id: int,
    payload: RecurringScheduleUpdate,
    session: AsyncSession = Depends(get_db_session),
):
    """Update a schedule. New rules regenerate its waiting matches."""
    try:
        schedule = await recurring_schedule_service.update_schedule(
            session,
            schedule_id,
            rules=payload.rules,
            min_players=payload.min_players,
            max_players=payload.max_players,
            name=payload.name,
            notes=payload.notes,
        )
        return schedule_to_dict(schedule)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error updating recurring schedule: {str(e)}")


@router.post("/api/recurring-schedules/{schedule_id}/toggle")
async def toggle_schedule(
    schedule_id: int, payload: ScheduleToggle, session: AsyncSession = Depends(get_db_session)
):
    try:
        schedule = await recurring_schedule_service.set_schedule_enabled(
            session, schedule_id, payload.enabled
        )
        return schedule_to_dict(schedule)
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error toggling recurring schedule: {str(e)}")


@router.delete("/api/recurring-schedules/{schedule_id}")
async def delete_schedule(schedule_id: int, session: AsyncSession = Depends(get_db_session)):
    try:
        await recurring_schedule_service.delete_schedule(session, schedule_id)
        return {"success": True}
    except MatchLifecycleError as e:
        raise http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error deleting recurring schedule: {str(e)}")
