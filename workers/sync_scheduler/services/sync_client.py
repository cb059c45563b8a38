from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

# the run trigger reports busy and fatal outcomes through these statuses
_RUN_OUTCOME_STATUSES = {200, 409, 500}


@dataclass(slots=True)
class RunResult:
    job_name: str
    status_code: int
    payload: dict[str, Any]

    @property
    def busy(self) -> bool:
        return self.status_code == 409

    @property
    def ok(self) -> bool:
        return self.status_code == 200 and bool(self.payload.get("ok"))


class SyncClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 900.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    async def run_job(self, job_name: str, *, force: bool = False) -> RunResult:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/sync/{job_name}/run",
                json={"force": force, "auto_sync": True},
                headers=self.headers,
            )
            if response.status_code not in _RUN_OUTCOME_STATUSES:
                response.raise_for_status()
            try:
                payload = response.json()
            except ValueError:
                payload = {"ok": False, "error": response.text}
            return RunResult(job_name=job_name, status_code=response.status_code, payload=payload)

    async def cleanup(self) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/admin/sync/cleanup", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def list_jobs(self) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/sync/jobs", headers=self.headers)
            response.raise_for_status()
            return response.json()
