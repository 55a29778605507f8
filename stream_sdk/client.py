import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

ATTEMPT_HEADER = "X-Job-Attempt"
OFFSET_HEADER = "X-Stream-Offset"
OWNER_HEADER = "X-Owner-ID"


class StreamClientError(Exception):
    pass


class StreamGoneError(StreamClientError):
    """The server no longer holds a live stream for the job."""


@dataclass
class LiveStream:
    attempt: int
    offset: int
    response: httpx.Response

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()


class StreamClient:
    def __init__(
        self,
        base_url: str,
        owner_id: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.owner_id = owner_id
        # Streams are long-lived; only connecting is bounded.
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, read=None),
            headers={OWNER_HEADER: owner_id},
            transport=transport,
        )

    async def enqueue(
        self,
        message_id: str,
        conversation_id: str,
        payload: Dict[str, Any],
        priority: int = 0,
        max_retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message_id": message_id,
            "conversation_id": conversation_id,
            "priority": priority,
            "payload": payload,
        }
        if max_retries is not None:
            body["max_retries"] = max_retries
        resp = await self.client.post("/api/v1/jobs", json=body)
        return self._json(resp)

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        resp = await self.client.get(f"/api/v1/jobs/{job_id}")
        return self._json(resp)

    async def list_jobs(self, status: Optional[str] = None) -> list[Dict[str, Any]]:
        params = {"status": status} if status else None
        resp = await self.client.get("/api/v1/jobs", params=params)
        return self._json(resp)

    async def cancel(self, job_id: str) -> Dict[str, Any]:
        resp = await self.client.post(f"/api/v1/jobs/{job_id}/cancel")
        return self._json(resp)

    async def get_message(self, job_id: str) -> Optional[Dict[str, Any]]:
        resp = await self.client.get(f"/api/v1/jobs/{job_id}/message")
        if resp.status_code == 404:
            return None
        return self._json(resp)

    @asynccontextmanager
    async def stream(self, job_id: str, offset: int = 0, attempt: Optional[int] = None) -> AsyncIterator[LiveStream]:
        """
        Opens the live frame stream for a job, replayed from line `offset` of the current attempt.
        If `attempt` no longer matches the server's attempt, the server replays from line 0;
        the effective offset comes back on the LiveStream.
        Raises StreamGoneError when the server has no stream to serve.
        """
        params: Dict[str, Any] = {"offset": offset}
        if attempt is not None:
            params["attempt"] = attempt
        request = self.client.build_request("GET", f"/api/v1/jobs/{job_id}/stream", params=params)
        response = await self.client.send(request, stream=True)
        try:
            if response.status_code in (404, 410):
                raise StreamGoneError(f"No live stream for job {job_id}")
            if response.is_error:
                await response.aread()
                raise StreamClientError(f"Stream request failed for job {job_id}: HTTP {response.status_code}")

            yield LiveStream(
                attempt=int(response.headers.get(ATTEMPT_HEADER, "0")),
                offset=int(response.headers.get(OFFSET_HEADER, str(offset))),
                response=response,
            )
        finally:
            await response.aclose()

    def _json(self, resp: httpx.Response) -> Any:
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Request %s %s rejected: %s", resp.request.method, resp.request.url, resp.status_code)
            raise StreamClientError(str(e)) from e
        return resp.json()

    async def close(self):
        await self.client.aclose()
