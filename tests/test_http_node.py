"""HTTP Request node: retries, backoff, timeouts and response storage."""

import json

import httpx

from crm_automation.services.definition import Node
from crm_automation.services.execution import NodeOutcome
from tests.conftest import no_sleep


async def _http(node_executor, context, **config):
    return await node_executor.execute(Node("req", "http", config), context)


async def test_get_stores_response(node_executor, context, transport):
    transport.responses.append(httpx.Response(200, json={"plan": "gold"}))

    result = await _http(node_executor, context, url="https://api.test/leads/{{lead.id}}",
                         storeAs="lookup")

    assert result.success
    assert str(transport.requests[0].url) == "https://api.test/leads/lead-1"
    assert result.result["status"] == 200
    assert result.result["attempts"] == 1
    assert context.get("http_response") == {"status": 200, "data": {"plan": "gold"}}
    assert context.get("lookup.plan") == "gold"


async def test_post_sends_json_body_and_headers(node_executor, context, transport):
    await _http(node_executor, context, url="https://api.test/hook", method="post",
                headers='{"X-Token": "abc"}', body='{"name": "{{lead.name}}"}')

    request = transport.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Token"] == "abc"
    assert json.loads(request.content) == {"name": "Ana"}


async def test_plain_text_body_is_sent_as_content(node_executor, context, transport):
    await _http(node_executor, context, url="https://api.test/hook", method="PUT", body="raw text")
    assert transport.requests[0].content == b"raw text"


async def test_server_errors_are_retried_with_backoff(node_executor, context, transport):
    transport.responses.extend([
        httpx.Response(503),
        httpx.ConnectError("connection refused"),
        httpx.Response(200, json={"ok": True}),
    ])

    result = await _http(node_executor, context, url="https://api.test/flaky", retries=3)

    assert result.success
    assert result.result["attempts"] == 3
    assert len(transport.requests) == 3
    assert no_sleep.calls == [2, 4]


async def test_client_error_is_not_retried(node_executor, context, transport):
    transport.responses.append(httpx.Response(404, json={"error": "missing"}))

    result = await _http(node_executor, context, url="https://api.test/missing", retries=3)

    assert result.outcome == NodeOutcome.FAIL
    assert result.error == "HTTP 404"
    assert len(transport.requests) == 1
    assert no_sleep.calls == []


async def test_retries_exhausted_reports_last_error(node_executor, context, transport):
    transport.responses.extend([httpx.Response(500), httpx.Response(502)])

    result = await _http(node_executor, context, url="https://api.test/down", retries=1)

    assert result.error == "HTTP 502"
    assert len(transport.requests) == 2


async def test_timeout_is_reported(node_executor, context, transport):
    transport.responses.append(httpx.ReadTimeout("too slow"))

    result = await _http(node_executor, context, url="https://api.test/slow")

    assert result.outcome == NodeOutcome.FAIL
    assert result.error.startswith("ReadTimeout")


async def test_retries_are_capped_by_settings(node_executor, context, transport, settings):
    transport.responses.extend([httpx.Response(500)] * 20)

    await _http(node_executor, context, url="https://api.test/down", retries=50)

    assert len(transport.requests) == settings.http_max_retries + 1


async def test_missing_url_fails(node_executor, context):
    result = await _http(node_executor, context)
    assert result.error == "URL is required"
