"""
Client for the billing provider's REST API, with retry and backoff.

Every mutating call carries an Idempotency-Key derived from the stored
event id, so a retried request cannot be applied twice by the provider.
"""
import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional

import aiohttp
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

logger = logging.getLogger(__name__)


class BillingProviderError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"Billing provider error {status}: {message}")
        self.status = status


class TransientBillingProviderError(BillingProviderError):
    """5xx and 429 responses; safe to retry."""


_retry_policy = retry(
    retry=retry_if_exception_type((TransientBillingProviderError, aiohttp.ClientError)),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)


class BillingProviderClient:
    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0):
        if not base_url or not api_key:
            raise ValueError("Billing provider URL and API key must be configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_settings(cls, settings) -> "BillingProviderClient":
        return cls(settings.billing_api_url, settings.billing_api_key)

    @_retry_policy
    async def _request(self, method: str, path: str, idempotency_key: Optional[str] = None,
                       **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.request(method, f"{self.base_url}{path}", headers=headers,
                                       **kwargs) as resp:
                if resp.status == 429 or resp.status >= 500:
                    text = await resp.text()
                    logger.warning(f"Billing provider {method} {path} returned {resp.status}, retrying")
                    raise TransientBillingProviderError(resp.status, text)
                if resp.status >= 400:
                    raise BillingProviderError(resp.status, await resp.text())
                return await resp.json()

    async def cancel_subscription(self, billing_ref: str, idempotency_key: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/customers/{billing_ref}/subscription/cancel",
            idempotency_key=idempotency_key,
        )

    async def list_events(self, since: Optional[datetime] = None, limit: int = 100) -> List[Dict[str, Any]]:
        params = {"limit": str(limit)}
        if since is not None:
            params["created_after"] = since.isoformat()
        data = await self._request("GET", "/events", params=params)
        return list(data.get("data", []))


async def cancel_with_provider(client: BillingProviderClient, subscriptions, organizations,
                               organization_id: str, acting_user_id: Optional[str] = None,
                               reason: Optional[str] = None):
    """Cancel locally first, then tell the provider using the stored event id as idempotency key."""
    loop = asyncio.get_running_loop()
    subscription = await loop.run_in_executor(
        None, partial(subscriptions.cancel, organization_id, acting_user_id=acting_user_id, reason=reason)
    )
    organization = await loop.run_in_executor(None, organizations.get_organization, organization_id)
    await client.cancel_subscription(organization.billing_ref, subscription.last_event_id)
    return subscription


async def replay_events(client: BillingProviderClient, subscriptions,
                        since: Optional[datetime] = None) -> Dict[str, int]:
    """Pull events from the provider and apply them; already-seen ids are no-ops."""
    loop = asyncio.get_running_loop()
    counts: Dict[str, int] = {}
    for raw in await client.list_events(since=since):
        result = await loop.run_in_executor(None, subscriptions.apply_billing_event, raw)
        counts[result.outcome] = counts.get(result.outcome, 0) + 1
    logger.info(f"Replayed billing events: {counts}")
    return counts
