"""FastAPI router for the exports trigger API."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from dateutil import parser as date_parser
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from bulk_exports.auth import authorize
from bulk_exports.errors import (
    Forbidden,
    InvalidCronExpression,
    JobNotFoundError,
    QuotaExceededError,
    ScheduleNotFoundError,
    Unauthorized,
)
from bulk_exports.models import ApiKey, ExportFormat, JobStatus
from bulk_exports.schedules import ScheduleService
from bulk_exports.service import ExportJobService

logger = logging.getLogger(__name__)

ApiKeyResolver = Callable[[str], Awaitable[Optional[ApiKey]]]


class CreateExportRequest(BaseModel):
    """Request model for creating an export job."""

    format: ExportFormat
    query: Dict[str, Any]
    priority: int = 0
    run_at: Optional[datetime] = None

    @field_validator("run_at", mode="before")
    @classmethod
    def parse_run_at(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                value = date_parser.isoparse(value)
            except ValueError as e:
                raise ValueError(f"run_at is not an ISO-8601 timestamp: {value}") from e
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class CreateExportResponse(BaseModel):
    """Response model for creating an export job."""

    job_id: str
    status: str


class CreateScheduleRequest(BaseModel):
    """Request model for creating a schedule."""

    name: str = Field(..., min_length=1, max_length=200)
    cron_expr: str
    format: ExportFormat
    payload: Dict[str, Any]
    is_active: bool = True


class UpdateScheduleRequest(BaseModel):
    """Request model for updating a schedule; omitted fields are unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    cron_expr: Optional[str] = None
    format: Optional[ExportFormat] = None
    payload: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


def register_error_handlers(app: FastAPI) -> None:
    """Render authorization failures as ``{"error", "code"}`` bodies."""

    async def auth_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.add_exception_handler(Forbidden, auth_error_handler)
    app.add_exception_handler(Unauthorized, auth_error_handler)


def _parse_uuid(value: str, what: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid {what} ID format") from e


def create_exports_router(
    job_service_factory: Callable[[], ExportJobService],
    schedule_service_factory: Callable[[], ScheduleService],
    resolve_api_key: ApiKeyResolver,
) -> APIRouter:
    """
    Create FastAPI router for the exports API.

    Every route passes through the authorization gate, and every result is
    scoped to the calling key's customer. Mount it on an app that has had
    ``register_error_handlers`` applied.

    Args:
        job_service_factory: Callable that returns an ExportJobService
        schedule_service_factory: Callable that returns a ScheduleService
        resolve_api_key: Looks up the API key presented with a request

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_job_service() -> ExportJobService:
        return job_service_factory()

    async def get_schedule_service() -> ScheduleService:
        return schedule_service_factory()

    async def require_api_key(
        request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
        authorization: Optional[str] = Header(None),
    ) -> ApiKey:
        """Resolve the presented key and check its scope against the method."""
        raw_key = x_api_key
        if not raw_key and authorization and authorization.lower().startswith("bearer "):
            raw_key = authorization[7:].strip()
        api_key = await resolve_api_key(raw_key) if raw_key else None
        return authorize(api_key, request.method)

    @router.post("/exports", response_model=CreateExportResponse, status_code=202)
    async def create_export(
        request: CreateExportRequest,
        api_key: ApiKey = Depends(require_api_key),
        job_service: ExportJobService = Depends(get_job_service),
    ):
        """Enqueue a new export job."""
        try:
            job = await job_service.create_export_job(
                customer_id=api_key.customer_id,
                format=request.format,
                query=request.query,
                priority=request.priority,
                run_at=request.run_at,
            )
        except QuotaExceededError as e:
            raise HTTPException(status_code=429, detail=str(e)) from e
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error creating export job")
            raise HTTPException(status_code=500, detail="Internal server error") from e
        return CreateExportResponse(job_id=str(job.id), status=job.status.value)

    @router.get("/exports")
    async def list_exports(
        status: Optional[JobStatus] = Query(None),
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        api_key: ApiKey = Depends(require_api_key),
        job_service: ExportJobService = Depends(get_job_service),
    ) -> List[Dict[str, Any]]:
        """List the caller's export jobs."""
        try:
            jobs = await job_service.list_jobs(
                api_key.customer_id, status=status, limit=limit, offset=offset
            )
            return [job.to_dict() for job in jobs]
        except Exception as e:
            logger.exception("Error listing export jobs")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/exports/{job_id}")
    async def get_export(
        job_id: str,
        api_key: ApiKey = Depends(require_api_key),
        job_service: ExportJobService = Depends(get_job_service),
    ) -> Dict[str, Any]:
        """Get an export job's status."""
        job_uuid = _parse_uuid(job_id, "job")
        try:
            return await job_service.get_job_status(job_uuid, customer_id=api_key.customer_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error getting export job")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.post("/exports/{job_id}/cancel")
    async def cancel_export(
        job_id: str,
        api_key: ApiKey = Depends(require_api_key),
        job_service: ExportJobService = Depends(get_job_service),
    ) -> Dict[str, Any]:
        """Cancel an export job."""
        job_uuid = _parse_uuid(job_id, "job")
        try:
            job = await job_service.cancel_job(job_uuid, api_key.customer_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {
            "id": str(job.id),
            "status": job.status.value,
            "cancel_requested": job.cancel_requested,
        }

    @router.post("/schedules", status_code=201)
    async def create_schedule(
        request: CreateScheduleRequest,
        api_key: ApiKey = Depends(require_api_key),
        schedule_service: ScheduleService = Depends(get_schedule_service),
    ) -> Dict[str, Any]:
        """Create a recurring export schedule."""
        try:
            schedule = await schedule_service.create_schedule(
                customer_id=api_key.customer_id,
                name=request.name,
                cron_expr=request.cron_expr,
                format=request.format,
                payload=request.payload,
                is_active=request.is_active,
            )
        except (InvalidCronExpression, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return schedule.to_dict()

    @router.get("/schedules")
    async def list_schedules(
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        api_key: ApiKey = Depends(require_api_key),
        schedule_service: ScheduleService = Depends(get_schedule_service),
    ) -> List[Dict[str, Any]]:
        """List the caller's schedules."""
        schedules = await schedule_service.list_schedules(
            api_key.customer_id, limit=limit, offset=offset
        )
        return [schedule.to_dict() for schedule in schedules]

    @router.get("/schedules/{schedule_id}")
    async def get_schedule(
        schedule_id: str,
        api_key: ApiKey = Depends(require_api_key),
        schedule_service: ScheduleService = Depends(get_schedule_service),
    ) -> Dict[str, Any]:
        schedule_uuid = _parse_uuid(schedule_id, "schedule")
        try:
            schedule = await schedule_service.get_schedule(schedule_uuid, api_key.customer_id)
        except ScheduleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return schedule.to_dict()

    @router.patch("/schedules/{schedule_id}")
    async def update_schedule(
        schedule_id: str,
        request: UpdateScheduleRequest,
        api_key: ApiKey = Depends(require_api_key),
        schedule_service: ScheduleService = Depends(get_schedule_service),
    ) -> Dict[str, Any]:
        """Update or toggle a schedule."""
        schedule_uuid = _parse_uuid(schedule_id, "schedule")
        try:
            schedule = await schedule_service.update_schedule(
                schedule_uuid,
                api_key.customer_id,
                **request.model_dump(exclude_none=True),
            )
        except ScheduleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except (InvalidCronExpression, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return schedule.to_dict()

    @router.delete("/schedules/{schedule_id}", status_code=204)
    async def delete_schedule(
        schedule_id: str,
        api_key: ApiKey = Depends(require_api_key),
        schedule_service: ScheduleService = Depends(get_schedule_service),
    ) -> Response:
        schedule_uuid = _parse_uuid(schedule_id, "schedule")
        try:
            await schedule_service.delete_schedule(schedule_uuid, api_key.customer_id)
        except ScheduleNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return Response(status_code=204)

    return router
