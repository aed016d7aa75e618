"""HTTP client for the Report Queue API"""

import os
from typing import Any

import httpx

DEFAULT_API_URL = "http://localhost:8000"


class ReportQueueClientError(Exception):
    """Base exception for Report Queue API errors"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class APIClient:
    """Thin httpx wrapper that unwraps the response envelope"""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=headers or {}
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            raise ReportQueueClientError(
                f"Invalid JSON response: {response.status_code}",
                status_code=response.status_code,
            ) from None

        if response.status_code >= 400 or not data.get("ok", True):
            error_msg = (data.get("error") or {}).get("message", "Unknown error")
            raise ReportQueueClientError(
                f"API Error {response.status_code}: {error_msg}",
                status_code=response.status_code,
            )

        # Envelope format carries the payload under "data"
        if "ok" in data:
            return data.get("data") or {}
        return data

    def request(
        self, method: str, path: str, json: Any | None = None
    ) -> dict[str, Any]:
        try:
            response = self.client.request(method, f"/v1{path}", json=json)
        except httpx.RequestError as e:
            raise ReportQueueClientError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def get(self, path: str) -> dict[str, Any]:
        """Make GET request"""
        return self.request("GET", path)

    def post(self, path: str, json: Any | None = None) -> dict[str, Any]:
        """Make POST request"""
        return self.request("POST", path, json=json)


class ReportQueueClient:
    """High-level client with one method per endpoint"""

    def __init__(self, base_url: str | None = None, timeout: float = 30):
        final_base_url = base_url or os.getenv("REPORTQ_API_URL", DEFAULT_API_URL)
        self.api = APIClient(base_url=final_base_url, timeout=timeout)

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    def submit_job(
        self, job_type: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Submit a job; returns {job_id, status}"""
        body: dict[str, Any] = {"job_type": job_type}
        if payload is not None:
            body["payload"] = payload
        return self.api.post("/jobs", json=body)

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}/status")

    def get_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")
