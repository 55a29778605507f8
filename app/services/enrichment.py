import logging
from typing import Any, Optional

import httpx

from app.api.v1.metrics import ENRICHMENT_FAILURES
from app.domain.errors import EnrichmentError
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)


class ContextEnricher:
    """
    Adds brand context to a generation payload before the model call.

    The lookup is auxiliary: when it fails the payload is returned as is and the job
    carries on without the extra context.
    """

    def __init__(
        self,
        base_url: Optional[str],
        cache: TTLCache[str, dict[str, Any]],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.cache = cache
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def enrich(self, payload: dict[str, Any]) -> dict[str, Any]:
        brand_id = payload.get("brand_id")
        if not brand_id or not self.base_url or "brand_context" in payload:
            return payload

        try:
            context = await self.lookup(str(brand_id))
        except EnrichmentError as e:
            ENRICHMENT_FAILURES.inc()
            logger.warning("Context lookup for brand %s failed, continuing without it: %s", brand_id, e)
            return payload

        return {**payload, "brand_context": context}

    async def lookup(self, brand_id: str) -> dict[str, Any]:
        cached = self.cache.get(brand_id)
        if cached is not None:
            return cached

        try:
            resp = await self.client.get(f"{self.base_url}/brands/{brand_id}")
            resp.raise_for_status()
            context = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EnrichmentError(f"{type(e).__name__}: {e}") from e

        if not isinstance(context, dict):
            raise EnrichmentError(f"Unexpected context document for brand {brand_id}")

        self.cache.set(brand_id, context)
        return context

    async def close(self):
        await self.client.aclose()
