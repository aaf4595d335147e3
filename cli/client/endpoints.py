"""API Endpoint Wrappers"""

from typing import Any

import httpx

from ..utils.config_manager import config
from .base import APIClient, DutyJobsAPIError

__all__ = ["DutyJobsAPIError", "DutyJobsClient"]


class DutyJobsClient:
    """High-level client with one method per job endpoint"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        self.api = APIClient(
            base_url=base_url or api_config.get("base_url", "http://localhost:8000"),
            timeout=int(api_config.get("timeout", 30)),
            headers=headers or api_config.get("headers") or {},
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def enqueue_job(
        self, type: str, metadata: dict[str, Any], priority: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"type": type, "metadata": metadata}
        if priority:
            body["priority"] = priority
        return self.api.post("/jobs", body)

    def retry_job(self, job_id: str, priority: str | None = None) -> dict[str, Any]:
        body = {"priority": priority} if priority else None
        return self.api.post(f"/jobs/{job_id}/retry", body)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")

    def pause_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/pause")

    def resume_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/resume")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    def queue_status(self) -> dict[str, Any]:
        return self.api.get("/jobs/queue/status")
