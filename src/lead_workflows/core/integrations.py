"""HTTP implementations of the engine collaborators.

``MarketingApiClient`` talks to the marketing service that owns leads,
templates, sequences, tasks and notifications. ``HttpWebhookClient`` calls
arbitrary customer webhooks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, MutableMapping, Sequence
from typing import Any, Generic, TypeVar, cast

import httpx
from cachetools import TTLCache

from ..config import EngineConfig
from ..schemas import (
    EmailMessage,
    EmailReceipt,
    EmailTemplate,
    LeadProfile,
    LeadScoreLevel,
    Notification,
    TaskRequest,
)
from .exceptions import CollaboratorError

__all__ = ["CacheManager", "CachedTemplateStore", "HttpWebhookClient", "MarketingApiClient"]

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Marketing service payloads use camelCase and Mongo-style ids.
_LEAD_KEYS = {
    "_id": "id",
    "firstName": "first_name",
    "lastName": "last_name",
    "scoreLevel": "score_level",
    "customFields": "custom_fields",
}
_TEMPLATE_KEYS = {
    "_id": "id",
    "htmlContent": "html_content",
    "textContent": "text_content",
}


def _normalise(payload: Mapping[str, Any], keys: Mapping[str, str]) -> dict[str, Any]:
    return {keys.get(key, key): value for key, value in payload.items()}


class CacheManager(Generic[T]):
    """Thin async-friendly wrapper around ``cachetools.TTLCache``."""

    def __init__(self, maxsize: int, ttl_seconds: int) -> None:
        self._cache: MutableMapping[str, T] = cast(
            MutableMapping[str, T], TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        )
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> T | None:
        async with self._lock:
            return self._cache.get(key)

    async def set(self, key: str, value: T) -> None:
        async with self._lock:
            self._cache[key] = value

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()


class MarketingApiClient:
    """Lead, template, email, sequence, notification, task and cohort calls."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ leads

    async def get_lead(self, lead_id: str) -> LeadProfile | None:
        response = await self._request("GET", f"/api/v1/leads/{lead_id}", allow_missing=True)
        if response is None:
            return None
        payload = self._json(response)
        if isinstance(payload, Mapping) and isinstance(payload.get("data"), Mapping):
            payload = payload["data"]
        if not isinstance(payload, Mapping):
            raise CollaboratorError(f"Unexpected lead payload for {lead_id}")
        data = _normalise(payload, _LEAD_KEYS)
        data["id"] = str(data.get("id", lead_id))
        return LeadProfile.model_validate(data)

    async def add_tags(self, lead_id: str, tags: Sequence[str]) -> None:
        await self._request("POST", f"/api/v1/leads/{lead_id}/tags", json={"tags": list(tags)})

    async def remove_tags(self, lead_id: str, tags: Sequence[str]) -> None:
        await self._request(
            "POST", f"/api/v1/leads/{lead_id}/tags/remove", json={"tags": list(tags)}
        )

    async def update_score(self, lead_id: str, score: int, level: LeadScoreLevel) -> None:
        await self._request(
            "PATCH",
            f"/api/v1/leads/{lead_id}",
            json={"score": score, "scoreLevel": level.value},
        )

    async def set_custom_field(self, lead_id: str, field_name: str, value: Any) -> None:
        await self._request(
            "PATCH",
            f"/api/v1/leads/{lead_id}/custom-fields",
            json={field_name: value},
        )

    # ------------------------------------------------------------------ messaging

    async def get_template(self, template_id: str) -> EmailTemplate | None:
        response = await self._request(
            "GET", f"/api/v1/email-templates/{template_id}", allow_missing=True
        )
        if response is None:
            return None
        payload = self._json(response)
        if not isinstance(payload, Mapping):
            raise CollaboratorError(f"Unexpected template payload for {template_id}")
        data = _normalise(payload, _TEMPLATE_KEYS)
        data["id"] = str(data.get("id", template_id))
        return EmailTemplate.model_validate(data)

    async def send(self, message: EmailMessage) -> EmailReceipt:
        response = await self._request(
            "POST", "/api/v1/emails/send", json=message.model_dump(mode="json")
        )
        payload = self._json(response)
        if not isinstance(payload, Mapping):
            return EmailReceipt(success=True)
        return EmailReceipt(
            success=bool(payload.get("success", True)),
            message_id=payload.get("messageId") or payload.get("message_id"),
        )

    async def enroll(self, lead_id: str, sequence_id: str) -> None:
        await self._request(
            "POST",
            f"/api/v1/sequences/{sequence_id}/enrollments",
            json={"leadId": lead_id},
        )

    async def notify(self, notification: Notification) -> None:
        await self._request(
            "POST", "/api/v1/notifications", json=notification.model_dump(mode="json")
        )

    async def create_task(self, task: TaskRequest) -> None:
        await self._request("POST", "/api/v1/tasks", json=task.model_dump(mode="json"))

    async def resolve(self, workflow_id: str, segment_id: str | None) -> list[str]:
        if not segment_id:
            logger.warning(
                "Scheduled workflow has no segment; cohort is empty",
                extra={"workflow_id": workflow_id},
            )
            return []
        response = await self._request("GET", f"/api/v1/segments/{segment_id}/leads")
        payload = self._json(response)
        if isinstance(payload, Mapping):
            payload = payload.get("leadIds") or payload.get("data") or []
        if not isinstance(payload, list):
            raise CollaboratorError(f"Unexpected cohort payload for segment {segment_id}")
        return [str(item["_id"] if isinstance(item, Mapping) else item) for item in payload]

    # ------------------------------------------------------------------ transport

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        allow_missing: bool = False,
    ) -> httpx.Response | None:
        max_attempts = max(1, self.config.marketing_api_retries + 1)
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            try:
                client = await self._get_client()
                response = await client.request(method, url, json=json)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status == httpx.codes.NOT_FOUND and allow_missing:
                    return None
                if status == httpx.codes.TOO_MANY_REQUESTS or 500 <= status < 600:
                    if attempt < max_attempts:
                        await asyncio.sleep(self._retry_delay(attempt))
                        continue
                raise CollaboratorError(
                    f"Marketing API {method} {url} returned {status}"
                ) from exc
            except httpx.RequestError as exc:
                if attempt < max_attempts:
                    await asyncio.sleep(self._retry_delay(attempt))
                    continue
                raise CollaboratorError(f"Unable to reach the marketing API: {exc}") from exc

        raise CollaboratorError("Exceeded retry limit when contacting the marketing API")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    headers = {"Accept": "application/json"}
                    if self.config.marketing_api_token:
                        headers["Authorization"] = f"Bearer {self.config.marketing_api_token}"
                    self._client = httpx.AsyncClient(
                        base_url=self.config.marketing_api_url,
                        timeout=self.config.collaborator_timeout_seconds,
                        headers=headers,
                        transport=self._transport,
                    )
        return self._client

    def _json(self, response: httpx.Response | None) -> object:
        if response is None or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CollaboratorError("Failed to decode marketing API response") from exc

    def _retry_delay(self, attempt: int) -> float:
        return self.config.marketing_api_backoff_seconds * (2 ** (attempt - 1))


class CachedTemplateStore:
    """Template lookups memoised for ``template_cache_ttl`` seconds."""

    def __init__(self, inner: Any, cache: CacheManager[EmailTemplate]) -> None:
        self._inner = inner
        self._cache = cache

    @classmethod
    def from_config(cls, inner: Any, config: EngineConfig) -> CachedTemplateStore:
        return cls(
            inner,
            CacheManager(
                maxsize=config.template_cache_max_size,
                ttl_seconds=config.template_cache_ttl,
            ),
        )

    async def get_template(self, template_id: str) -> EmailTemplate | None:
        cached = await self._cache.get(template_id)
        if cached is not None:
            return cached
        template = await self._inner.get_template(template_id)
        if template is not None:
            await self._cache.set(template_id, template)
        return template


class HttpWebhookClient:
    """Sends outbound webhooks; non-2xx responses are reported, not raised."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> int:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        try:
            response = await self._client.request(
                method,
                url,
                headers=request_headers,
                json=body if method != "GET" else None,
            )
        except httpx.RequestError as exc:
            raise CollaboratorError(f"Webhook {method} {url} failed: {exc}") from exc
        return response.status_code
