"""Tests for HttpEffectAdapter with a stubbed aiohttp session."""

import asyncio
import json
from unittest.mock import AsyncMock

import aiohttp
import pytest

from automation_engine import Automation, AutomationEngine, EffectAdapterError, RunStatus
from automation_engine.adapters import HttpEffectAdapter, RecordingEffectAdapter


class FakeResponse:
    def __init__(self, status=200, body="", content_type="application/json"):
        self.status = status
        self.headers = {"Content-Type": content_type}
        self._body = body

    async def text(self):
        return self._body


class FakeRequest:
    """Async context manager returned by FakeSession.request."""

    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.close = AsyncMock()

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        return FakeRequest(self.outcomes.pop(0))


class TestHttpEffectAdapter:
    """Test cases for HttpEffectAdapter."""

    @pytest.mark.asyncio
    async def test_json_body_and_response(self):
        """Test that dict bodies go out as JSON and JSON responses are decoded."""
        session = FakeSession(FakeResponse(201, json.dumps({"id": 9})))
        adapter = HttpEffectAdapter(session=session)

        response = await adapter.call_webhook(
            "https://example.com/hook", "post", {"X-Key": "k"}, {"a": 1}, 3.0
        )

        sent = session.requests[0]
        assert sent["method"] == "POST"
        assert sent["json"] == {"a": 1}
        assert "data" not in sent
        assert sent["headers"] == {"X-Key": "k"}
        assert sent["timeout"].total == 3.0
        assert response.status == 201
        assert response.body == {"id": 9}

    @pytest.mark.asyncio
    async def test_text_body_and_response(self):
        """Test that other bodies go out as text and text responses stay text."""
        session = FakeSession(FakeResponse(200, "ok", content_type="text/plain"))
        adapter = HttpEffectAdapter(session=session, default_timeout=7.0)

        response = await adapter.call_webhook("https://example.com", "PUT", {}, 42, None)

        assert session.requests[0]["data"] == "42"
        assert session.requests[0]["timeout"].total == 7.0
        assert response.body == "ok"

    @pytest.mark.asyncio
    async def test_malformed_json_kept_as_text(self):
        """Test that a response claiming JSON but not parsing is kept as text."""
        adapter = HttpEffectAdapter(session=FakeSession(FakeResponse(200, "{oops")))

        response = await adapter.call_webhook("https://example.com", "GET", {}, None, 1)

        assert response.body == "{oops"

    @pytest.mark.asyncio
    async def test_client_error(self):
        """Test that transport errors become EffectAdapterError."""
        session = FakeSession(aiohttp.ClientConnectionError("refused"))
        adapter = HttpEffectAdapter(session=session)

        with pytest.raises(EffectAdapterError) as exc_info:
            await adapter.call_webhook("https://example.com", "GET", {}, None, 1)

        assert exc_info.value.capability == "call_webhook"
        assert isinstance(exc_info.value.original_error, aiohttp.ClientError)

    @pytest.mark.asyncio
    async def test_timeout_propagates(self):
        """Test that timeouts are re-raised for the engine to report."""
        adapter = HttpEffectAdapter(session=FakeSession(asyncio.TimeoutError()))

        with pytest.raises(asyncio.TimeoutError):
            await adapter.call_webhook("https://example.com", "GET", {}, None, 1)

    @pytest.mark.asyncio
    async def test_retry_on_status(self):
        """Test retrying a retryable status."""
        session = FakeSession(FakeResponse(503), FakeResponse(200, '{"ok": true}'))
        adapter = HttpEffectAdapter(session=session, max_retries=1, retry_backoff_factor=0)

        response = await adapter.call_webhook("https://example.com", "POST", {}, None, 1)

        assert len(session.requests) == 2
        assert response.status == 200
        assert response.body == {"ok": True}

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self):
        """Test that retries are off unless configured."""
        session = FakeSession(FakeResponse(503))
        adapter = HttpEffectAdapter(session=session)

        response = await adapter.call_webhook("https://example.com", "POST", {}, None, 1)

        assert response.status == 503
        assert len(session.requests) == 1

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        """Test that the adapter leaves caller-owned sessions open."""
        session = FakeSession()

        async with HttpEffectAdapter(session=session):
            pass

        session.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_delegation(self):
        """Test that non-HTTP capabilities go to the fallback adapter."""
        fallback = RecordingEffectAdapter()
        adapter = HttpEffectAdapter(fallback=fallback, session=FakeSession())

        await adapter.send_notification("hello", title="t")
        await adapter.device_action("wifi", {"enabled": True})
        await adapter.launch_app("music")

        assert [c.capability for c in fallback.calls] == [
            "send_notification",
            "device_action",
            "launch_app",
        ]

    @pytest.mark.asyncio
    async def test_default_fallback_is_unavailable(self):
        """Test that capabilities without a fallback fail cleanly."""
        adapter = HttpEffectAdapter(session=FakeSession())

        with pytest.raises(EffectAdapterError):
            await adapter.send_message("sms", "+1555", "hi")


class TestHttpAdapterWithEngine:
    """Test cases running webhook steps through the HTTP adapter."""

    @pytest.mark.asyncio
    async def test_webhook_output_feeds_later_steps(self):
        """Test that a webhook response body is usable by later steps."""
        fallback = RecordingEffectAdapter()
        session = FakeSession(FakeResponse(200, json.dumps({"order": {"id": "A7"}})))
        automation = Automation.from_dict(
            {
                "id": "order",
                "steps": [
                    {
                        "id": "create",
                        "type": "webhook",
                        "config": {
                            "url": "https://shop.example.com/orders",
                            "body": {"item": "{{ item }}"},
                            "outputVariable": "resp",
                        },
                    },
                    {
                        "id": "tell",
                        "type": "notification",
                        "config": {"message": "Order {{ resp.body.order.id }} ({{ resp.status }})"},
                    },
                ],
            }
        )

        async with HttpEffectAdapter(fallback=fallback, session=session) as effects:
            engine = AutomationEngine(effects=effects)
            report = await engine.start(automation, initial_variables={"item": "tea"})

        assert report.status == RunStatus.SUCCEEDED
        assert session.requests[0]["json"] == {"item": "tea"}
        assert session.requests[0]["timeout"].total == 15.0
        assert fallback.calls_for("send_notification")[0].params["message"] == "Order A7 (200)"

    @pytest.mark.asyncio
    async def test_http_error_status_fails_run(self):
        """Test that an error status halts the run."""
        session = FakeSession(FakeResponse(500, "boom", content_type="text/plain"))
        automation = Automation.from_dict(
            {
                "id": "hook",
                "steps": [
                    {"id": "call", "type": "webhook", "config": {"url": "https://example.com"}},
                    {"id": "never", "type": "notification", "config": {"message": "x"}},
                ],
            }
        )

        engine = AutomationEngine(
            effects=HttpEffectAdapter(fallback=RecordingEffectAdapter(), session=session)
        )
        report = await engine.start(automation)

        assert report.status == RunStatus.FAILED
        assert report.error_type == "EffectAdapterError"
        assert "HTTP 500" in report.error
        assert report.step_ids() == ["call"]
