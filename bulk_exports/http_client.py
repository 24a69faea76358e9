"""HTTP client for the exports trigger API."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import aiohttp

from bulk_exports.errors import RemoteHttpError
from bulk_exports.models import ExportFormat


class ExportsHttpClient:
    """HTTP client for calling a bulk exports service."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Base URL of the exports service (e.g., "https://exports.internal")
            api_key: API key sent in the X-API-Key header
            timeout: Request timeout in seconds
            session: Optional shared session; a new one is opened per call otherwise
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def create_export(
        self,
        *,
        format: ExportFormat,
        query: Dict[str, Any],
        priority: int = 0,
        run_at: Optional[datetime] = None,
    ) -> UUID:
        """
        Create an export job.

        Returns:
            Job ID (UUID)

        Raises:
            RemoteHttpError: If the HTTP request fails
        """
        body = {"format": ExportFormat(format).value, "query": query, "priority": priority}
        if run_at is not None:
            body["run_at"] = run_at.isoformat()
        data = await self._request("POST", "/exports", json_body=body)
        return UUID(data["job_id"])

    async def get_export(self, job_id: UUID) -> Dict[str, Any]:
        """Get an export job's status, including its download URL once completed."""
        return await self._request("GET", f"/exports/{job_id}")

    async def list_exports(
        self,
        *,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        return await self._request("GET", "/exports", params=params)

    async def cancel_export(self, job_id: UUID) -> Dict[str, Any]:
        return await self._request("POST", f"/exports/{job_id}/cancel")

    async def create_schedule(
        self,
        *,
        name: str,
        cron_expr: str,
        format: ExportFormat,
        payload: Dict[str, Any],
        is_active: bool = True,
    ) -> Dict[str, Any]:
        body = {
            "name": name,
            "cron_expr": cron_expr,
            "format": ExportFormat(format).value,
            "payload": payload,
            "is_active": is_active,
        }
        return await self._request("POST", "/schedules", json_body=body)

    async def list_schedules(self, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return await self._request("GET", "/schedules", params={"limit": limit, "offset": offset})

    async def update_schedule(self, schedule_id: UUID, **changes: Any) -> Dict[str, Any]:
        """Update a schedule; pass only the fields to change."""
        return await self._request("PATCH", f"/schedules/{schedule_id}", json_body=changes)

    async def delete_schedule(self, schedule_id: UUID) -> None:
        await self._request("DELETE", f"/schedules/{schedule_id}")

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._session is not None:
            return await self._send(self._session, method, path, json_body, params)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._send(session, method, path, json_body, params)

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> Any:
        headers = {"X-API-Key": self.api_key}
        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                json=json_body,
                params=params,
                headers=headers,
            ) as resp:
                response_body = await resp.text()

                if resp.status >= 400:
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"{method} {path} failed: {response_body}",
                        response_body=response_body,
                    )

                if not response_body:
                    return None
                return json.loads(response_body)

        except aiohttp.ClientError as e:
            raise RemoteHttpError(
                status_code=0,
                message=f"Network error: {str(e)}",
            ) from e
