"""Tests for the HTTP collaborator implementations."""

import json

import httpx
import pytest

from lead_workflows.api.deps import close_resources, get_collaborators
from lead_workflows.config import EngineConfig
from lead_workflows.core.exceptions import CollaboratorError
from lead_workflows.core.integrations import (
    CachedTemplateStore,
    HttpWebhookClient,
    MarketingApiClient,
)
from lead_workflows.schemas import EmailMessage, EmailTemplate, LeadScoreLevel


def make_config(**overrides) -> EngineConfig:
    values = {
        "marketing_api_url": "http://marketing.test",
        "marketing_api_token": "secret",
        "marketing_api_retries": 2,
        "marketing_api_backoff_seconds": 0.001,
    }
    values.update(overrides)
    return EngineConfig(**values)


def make_client(handler, **overrides) -> MarketingApiClient:
    return MarketingApiClient(make_config(**overrides), transport=httpx.MockTransport(handler))


async def test_get_lead_normalises_marketing_payload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "_id": "abc",
                    "email": "ada@example.com",
                    "firstName": "Ada",
                    "score": 42,
                    "scoreLevel": "warm",
                    "tags": ["vip"],
                    "customFields": {"plan": "pro"},
                }
            },
        )

    client = make_client(handler)
    lead = await client.get_lead("abc")
    await client.close()

    assert lead is not None
    assert lead.first_name == "Ada"
    assert lead.score_level == LeadScoreLevel.WARM
    assert lead.custom_fields == {"plan": "pro"}
    assert seen[0].url.path == "/api/v1/leads/abc"
    assert seen[0].headers["Authorization"] == "Bearer secret"


async def test_missing_lead_and_template_return_none():
    client = make_client(lambda request: httpx.Response(404))

    assert await client.get_lead("nope") is None
    assert await client.get_template("nope") is None
    await client.close()


async def test_server_errors_are_retried_then_raised():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    client = make_client(handler)
    with pytest.raises(CollaboratorError, match="returned 503"):
        await client.add_tags("abc", ["vip"])
    await client.close()

    assert calls == 3


async def test_transient_failure_recovers():
    responses = iter([httpx.Response(502), httpx.Response(204)])
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return next(responses)

    client = make_client(handler)
    await client.update_score("abc", 75, LeadScoreLevel.HOT)
    await client.close()

    assert bodies == [{"score": 75, "scoreLevel": "hot"}] * 2


async def test_client_errors_are_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400)

    client = make_client(handler)
    with pytest.raises(CollaboratorError, match="returned 400"):
        await client.set_custom_field("abc", "plan", "pro")
    await client.close()

    assert calls == 1


async def test_send_email_reads_provider_receipt():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/emails/send"
        return httpx.Response(200, json={"success": True, "messageId": "m-1"})

    client = make_client(handler)
    receipt = await client.send(EmailMessage(to="ada@example.com", subject="Hi", html="<p/>"))
    await client.close()

    assert receipt.success
    assert receipt.message_id == "m-1"


async def test_cohort_resolution():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"leadIds": ["a", {"_id": "b"}]})

    client = make_client(handler)
    assert await client.resolve("wf", "seg-1") == ["a", "b"]
    assert await client.resolve("wf", None) == []
    await client.close()


class CountingTemplates:
    def __init__(self) -> None:
        self.lookups = 0

    async def get_template(self, template_id: str) -> EmailTemplate | None:
        self.lookups += 1
        if template_id == "missing":
            return None
        return EmailTemplate(id=template_id, name="Welcome", subject="Hi", html_content="<p/>")


async def test_template_cache_memoises_hits_only():
    inner = CountingTemplates()
    store = CachedTemplateStore.from_config(inner, make_config())

    first = await store.get_template("T1")
    second = await store.get_template("T1")
    await store.get_template("missing")
    await store.get_template("missing")

    assert first == second
    assert inner.lookups == 3


async def test_webhook_client_reports_status_codes():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(503)

    client = HttpWebhookClient(transport=httpx.MockTransport(handler))
    status = await client.call(
        "https://hooks.test/x", headers={"X-Token": "t"}, body={"lead": {"id": "abc"}}
    )
    await client.close()

    assert status == 503
    assert requests[0].headers["X-Token"] == "t"
    assert json.loads(requests[0].content) == {"lead": {"id": "abc"}}


async def test_webhook_transport_failure_raises_collaborator_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = HttpWebhookClient(transport=httpx.MockTransport(handler))
    with pytest.raises(CollaboratorError, match="refused"):
        await client.call("https://hooks.test/x")
    await client.close()


async def test_template_cache_is_shared_across_collaborator_lookups():
    try:
        first = get_collaborators()
        second = get_collaborators()
        assert isinstance(first.templates, CachedTemplateStore)
        assert first.templates is second.templates
    finally:
        await close_resources()

    assert get_collaborators().templates is not first.templates
    await close_resources()
