import logging
from typing import Any, AsyncGenerator, Optional, Protocol

import httpx

from app.api.v1.metrics import FRAME_DECODE_ERRORS
from app.domain.cancellation import CancellationToken
from app.domain.errors import GenerationError
from stream_sdk.frames import Frame, FrameDecoder

logger = logging.getLogger(__name__)


class Generator(Protocol):
    """Produces the ordered frame stream for one generation request."""

    def generate(self, payload: dict[str, Any], token: CancellationToken) -> AsyncGenerator[Frame, None]: ...


class HttpGenerationClient:
    """
    Calls the model gateway and decodes its NDJSON response into frames as bytes arrive.
    Stops reading as soon as the token is cancelled.
    """

    def __init__(self, url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        # Only connecting and the wait between chunks are bounded.
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def generate(self, payload: dict[str, Any], token: CancellationToken) -> AsyncGenerator[Frame, None]:
        decoder = FrameDecoder()
        try:
            async with self.client.stream("POST", self.url, json=payload) as resp:
                if resp.is_error:
                    await resp.aread()
                    raise GenerationError(f"Generation request failed: HTTP {resp.status_code}")

                async for chunk in resp.aiter_bytes():
                    if token.cancelled:
                        return
                    for frame in decoder.feed(chunk):
                        yield frame
        except httpx.HTTPError as e:
            raise GenerationError(f"{type(e).__name__}: {e}") from e
        finally:
            if decoder.corrupt_lines:
                FRAME_DECODE_ERRORS.inc(decoder.corrupt_lines)
                logger.warning("Dropped %d corrupt frame lines from the generator", decoder.corrupt_lines)

        for frame in decoder.flush():
            yield frame

    async def close(self):
        await self.client.aclose()
