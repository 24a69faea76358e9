"""Cron helpers and the schedule service layer."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import asyncpg
from croniter import croniter

from bulk_exports.config import ExportsConfig
from bulk_exports.errors import InvalidCronExpression
from bulk_exports.models import ExportFormat, ExportQuery, ExportSchedule, utc_now
from bulk_exports.store import ScheduleStore

# Upcoming runs inspected when checking the minimum interval.
INTERVAL_SAMPLE_RUNS = 12


def next_run_time(cron_expr: str, after: datetime) -> datetime:
    """First time matching ``cron_expr`` strictly after ``after``."""
    try:
        return croniter(cron_expr, after).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise InvalidCronExpression(f"Invalid cron expression {cron_expr!r}: {e}") from e


def validate_cron_expression(
    cron_expr: str,
    min_interval_seconds: int = 3600,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Check a five-field cron expression and its firing frequency.

    Returns:
        The first run time after ``now``

    Raises:
        InvalidCronExpression: If the expression does not parse or fires
            more often than ``min_interval_seconds``
    """
    if not isinstance(cron_expr, str) or len(cron_expr.split()) != 5:
        raise InvalidCronExpression(
            f"Invalid cron expression {cron_expr!r}: expected 5 fields"
        )
    if not croniter.is_valid(cron_expr):
        raise InvalidCronExpression(f"Invalid cron expression {cron_expr!r}")

    now = now or utc_now()
    runs = croniter(cron_expr, now)
    first = runs.get_next(datetime)
    previous = first
    for _ in range(INTERVAL_SAMPLE_RUNS):
        current = runs.get_next(datetime)
        gap = (current - previous).total_seconds()
        if gap < min_interval_seconds:
            raise InvalidCronExpression(
                f"Cron interval must be at least {min_interval_seconds // 60} minutes, "
                f"got ~{round(gap / 60)} minutes"
            )
        previous = current
    return first


class ScheduleService:
    """High-level API for recurring export schedules."""

    def __init__(
        self,
        config: ExportsConfig,
        db_pool: Optional[asyncpg.Pool] = None,
        logger: Optional[logging.Logger] = None,
        store: Optional[ScheduleStore] = None,
    ):
        self.config = config
        self.store = store or ScheduleStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def create_schedule(
        self,
        *,
        customer_id: str,
        name: str,
        cron_expr: str,
        format: ExportFormat,
        payload: Dict[str, Any],
        is_active: bool = True,
    ) -> ExportSchedule:
        """
        Create a schedule.

        Raises:
            InvalidCronExpression: If the cron expression is rejected
            ValueError: If the payload is not a valid export query
        """
        next_run_at = validate_cron_expression(
            cron_expr, self.config.min_schedule_interval_seconds
        )
        query = ExportQuery.model_validate(payload)

        schedule = await self.store.insert_schedule(
            id=uuid4(),
            customer_id=customer_id,
            name=name,
            cron_expr=cron_expr,
            format=ExportFormat(format),
            payload=query.model_dump(mode="json", exclude_none=True),
            is_active=is_active,
            next_run_at=next_run_at,
        )
        self.logger.info(
            f"Created schedule {schedule.id} for customer {customer_id} "
            f"({cron_expr}, next run {next_run_at.isoformat()})"
        )
        return schedule

    async def get_schedule(self, schedule_id: UUID, customer_id: str) -> ExportSchedule:
        return await self.store.get_schedule(schedule_id, customer_id=customer_id)

    async def list_schedules(
        self, customer_id: str, limit: int = 50, offset: int = 0
    ) -> List[ExportSchedule]:
        return await self.store.list_schedules(customer_id, limit=limit, offset=offset)

    async def update_schedule(
        self,
        schedule_id: UUID,
        customer_id: str,
        *,
        name: Optional[str] = None,
        cron_expr: Optional[str] = None,
        format: Optional[ExportFormat] = None,
        payload: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> ExportSchedule:
        """
        Update a schedule's definition or toggle it.

        Changing the cron expression, or re-activating a paused schedule,
        recomputes the next run from now.
        """
        current = await self.store.get_schedule(schedule_id, customer_id=customer_id)
        changes: Dict[str, Any] = {}

        if name is not None:
            changes["name"] = name
        if format is not None:
            changes["format"] = ExportFormat(format)
        if payload is not None:
            changes["payload"] = ExportQuery.model_validate(payload).model_dump(
                mode="json", exclude_none=True
            )
        if cron_expr is not None:
            changes["cron_expr"] = cron_expr
            changes["next_run_at"] = validate_cron_expression(
                cron_expr, self.config.min_schedule_interval_seconds
            )
        if is_active is not None:
            changes["is_active"] = is_active
            if is_active and not current.is_active and "next_run_at" not in changes:
                changes["next_run_at"] = next_run_time(current.cron_expr, utc_now())

        schedule = await self.store.update_schedule(schedule_id, customer_id, changes)
        self.logger.info(f"Updated schedule {schedule_id}: {sorted(changes)}")
        return schedule

    async def delete_schedule(self, schedule_id: UUID, customer_id: str) -> None:
        await self.store.delete_schedule(schedule_id, customer_id)
        self.logger.info(f"Deleted schedule {schedule_id}")

    async def get_due_schedules(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[ExportSchedule]:
        return await self.store.get_due_schedules(now or utc_now(), limit=limit)

    async def claim_schedule(
        self, schedule: ExportSchedule, fired_at: Optional[datetime] = None
    ) -> ExportSchedule:
        """
        Claim one due firing and advance the schedule.

        The next run is computed from the fire time, so missed periods are
        not replayed.

        Raises:
            ScheduleClaimConflict: If another evaluation claimed it first
        """
        fired_at = fired_at or utc_now()
        next_run_at = next_run_time(schedule.cron_expr, fired_at)
        return await self.store.claim_schedule(
            schedule.id,
            expected_next_run_at=schedule.next_run_at,
            fired_at=fired_at,
            next_run_at=next_run_at,
        )
