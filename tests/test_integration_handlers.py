"""Tests for the HTTP, trigger and email handlers."""

import base64
import hashlib
import hmac
import json
import smtplib
from datetime import datetime, timezone

import httpx
import pytest

from conftest import LogRecorder, make_context
from services.handlers.http import (
    build_body, build_headers, handle_http_request, set_client_factory, status_is_valid,
)
from services.handlers.mail import configure_smtp, handle_email_send, set_smtp_factory
from services.handlers.triggers import (
    describe_cron, handle_form_trigger, handle_manual_trigger, handle_schedule_trigger,
    handle_webhook_trigger, next_fire_time, verify_signature,
)


def mock_http(handler):
    """Route every client the HTTP handler creates through ``handler``."""
    transport = httpx.MockTransport(handler)
    set_client_factory(lambda **kwargs: httpx.AsyncClient(transport=transport, **kwargs))


# =============================================================================
# HTTP
# =============================================================================

class TestHttpHelpers:
    def test_auth_headers(self):
        basic = build_headers({}, {"type": "basic", "username": "u", "password": "p"})
        assert basic["Authorization"] == "Basic " + base64.b64encode(b"u:p").decode()
        assert build_headers({}, {"type": "bearer", "token": "t"})["Authorization"] == "Bearer t"
        api_key = build_headers({"Accept": "json"}, {"type": "api_key", "apiKey": "k",
                                                     "headerName": "X-Key"})
        assert api_key == {"Accept": "json", "X-Key": "k"}

    def test_body_kinds(self):
        assert build_body({"a": 1}, "json") == {"json": {"a": 1}}
        assert build_body({"a": 1}, "form") == {"data": {"a": "1"}}
        assert build_body({"a": 1}, "text") == {"content": '{"a": 1}'}
        assert build_body(None, "json") == {}

    def test_status_validation(self):
        assert status_is_valid(204, None)
        assert not status_is_valid(404, None)
        assert status_is_valid(404, [404])
        assert status_is_valid(500, "all")


class TestHttpRequest:
    async def test_get_json(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"users": [1, 2]})

        mock_http(handler)
        result = await handle_http_request(make_context(config={
            "url": "https://api.example.com/users",
            "queryParams": {"page": 2, "skip": None},
            "auth": {"type": "bearer", "token": "secret"},
        }))

        assert result.success
        assert result.data["status"] == 200
        assert result.data["ok"] is True
        assert result.data["data"] == {"users": [1, 2]}
        assert seen["url"] == "https://api.example.com/users?page=2"
        assert seen["auth"] == "Bearer secret"
        assert result.metadata.bytes_processed > 0

    async def test_post_json_body(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, text="created")

        mock_http(handler)
        result = await handle_http_request(make_context(config={
            "url": "https://api.example.com/items", "method": "post", "body": {"name": "x"},
        }))
        assert captured == {"method": "POST", "body": {"name": "x"}}
        assert result.data["data"] == "created"

    @pytest.mark.parametrize("status,code,retryable", [
        (404, "OPERATION_FAILED", False),
        (429, "RATE_LIMIT", True),
        (503, "OPERATION_FAILED", True),
    ])
    async def test_rejected_status(self, status, code, retryable):
        mock_http(lambda request: httpx.Response(status))
        result = await handle_http_request(make_context(config={"url": "https://x.test/"}))
        assert not result.success
        assert result.error.code == code
        assert result.error.retryable is retryable
        assert str(status) in result.error.message

    async def test_validate_status_all(self):
        mock_http(lambda request: httpx.Response(500, json={"error": "boom"}))
        result = await handle_http_request(make_context(config={
            "url": "https://x.test/", "validateStatus": "all"}))
        assert result.success
        assert result.data["ok"] is False

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        mock_http(handler)
        result = await handle_http_request(make_context(config={"url": "https://x.test/",
                                                                "timeout": 10}))
        assert result.error.code == "TIMEOUT"
        assert result.error.retryable is True

    async def test_connect_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        mock_http(handler)
        result = await handle_http_request(make_context(config={"url": "https://x.test/"}))
        assert result.error.code == "CONNECTION_FAILED"
        assert result.error.retryable is True

    @pytest.mark.parametrize("config,code", [
        ({}, "MISSING_CONFIG"),
        ({"url": "not a url"}, "INVALID_CONFIG"),
        ({"url": "ftp://files.test/"}, "INVALID_CONFIG"),
        ({"url": "https://x.test/", "method": "BREW"}, "INVALID_OPERATION"),
        ({"url": "https://x.test/", "headers": "Accept: text/plain"}, "INVALID_CONFIG"),
        ({"url": "https://x.test/", "queryParams": ["page", 2]}, "INVALID_CONFIG"),
        ({"url": "https://x.test/", "auth": "token"}, "INVALID_CONFIG"),
    ])
    async def test_configuration_errors(self, config, code):
        result = await handle_http_request(make_context(config=config))
        assert result.error.code == code
        assert result.error.retryable is False


# =============================================================================
# Triggers
# =============================================================================

class TestTriggers:
    async def test_manual_outputs_payload(self):
        result = await handle_manual_trigger(make_context(
            trigger={"type": "manual", "payload": {"data": {"age": 21}}}))
        assert result.data == {"data": {"age": 21}}

    async def test_form_submission(self):
        result = await handle_form_trigger(make_context(
            config={"formId": "signup"},
            trigger={"type": "form_submission", "payload": {
                "data": {"email": "a@b.c"}, "submissionId": "s-1"}}))
        assert result.data["formId"] == "signup"
        assert result.data["submissionId"] == "s-1"
        assert result.data["data"] == {"email": "a@b.c"}
        assert result.data["metadata"] == {}
        assert result.data["submittedAt"]

    async def test_form_payload_without_data_key(self):
        result = await handle_form_trigger(make_context(
            trigger={"type": "form_submission", "payload": {"formId": "f", "name": "Ada"}}))
        assert result.data["data"] == {"name": "Ada"}
        assert result.data["submissionId"]

    async def test_unexpected_trigger_type_is_logged(self):
        log = LogRecorder()
        await handle_form_trigger(make_context(trigger={"type": "manual", "payload": {}}, log=log))
        assert any("Unexpected trigger type" in m for m in log.messages("warn"))

    def test_signature_verification(self):
        body = '{"event":"push"}'
        digest = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        sha1 = hmac.new(b"s3cret", body.encode(), hashlib.sha1).hexdigest()

        assert verify_signature(body, f"sha256={digest}", "s3cret")
        assert verify_signature(body, digest, "s3cret")
        assert verify_signature(body, f"sha1={sha1}", "s3cret")
        assert not verify_signature(body, f"sha256={digest}", "other")
        assert not verify_signature(body, "sha256=zzzé", "s3cret")

    async def test_webhook_verified(self):
        body = '{"id":1}'
        digest = hmac.new(b"key", body.encode(), hashlib.sha256).hexdigest()
        result = await handle_webhook_trigger(make_context(
            config={"secret": "key"},
            trigger={"type": "webhook", "payload": {
                "method": "POST", "headers": {"X-Hub-Signature-256": f"sha256={digest}"},
                "body": {"id": 1}, "rawBody": body, "query": {"a": "b"}, "path": "/hooks/x",
            }}))

        assert result.success
        assert result.data["verified"] is True
        assert result.data["signatureError"] is None
        assert result.data["headers"] == {"x-hub-signature-256": f"sha256={digest}"}
        assert result.data["query"] == {"a": "b"}
        assert result.data["path"] == "/hooks/x"

    async def test_webhook_bad_signature_reported(self):
        result = await handle_webhook_trigger(make_context(
            config={"secret": "key"},
            trigger={"type": "webhook", "payload": {
                "headers": {"x-signature": "sha256=deadbeef"}, "rawBody": "{}"}}))
        assert result.success
        assert result.data["verified"] is False
        assert result.data["signatureError"] == "Invalid webhook signature"

    async def test_webhook_missing_signature(self):
        result = await handle_webhook_trigger(make_context(
            config={"secret": "key"},
            trigger={"type": "webhook", "payload": {"rawBody": "{}"}}))
        assert result.data["signatureError"] == "Missing webhook signature"

    def test_describe_cron(self):
        assert describe_cron("* * * * *") == "Every minute"
        assert describe_cron("0 * * * *") == "Every hour"
        assert describe_cron("30 9 * * *") == "Every day at 9:30"
        assert describe_cron("0 8 * * 1-5") == "Weekdays at 8:00"
        assert describe_cron("0 8 * * 1") == "Every Monday at 8:00"
        assert describe_cron("*/5 * * * *") == "*/5 * * * *"

    def test_next_fire_time(self):
        now = datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)
        assert next_fire_time("0 * * * *", "UTC", now) == datetime(2024, 1, 1, 11, 0,
                                                                   tzinfo=timezone.utc)

    async def test_schedule_trigger(self):
        result = await handle_schedule_trigger(make_context(
            config={"schedule": "0 9 * * *", "timezone": "UTC", "payload": {"report": "daily"}},
            trigger={"type": "schedule", "payload": {"iteration": 3}}))
        assert result.success
        assert result.data["schedule"]["description"] == "Every day at 9:00"
        assert result.data["nextScheduledAt"]
        assert result.data["execution"] == {"iteration": 3, "isFirstRun": False}
        assert result.data["payload"] == {"report": "daily", "iteration": 3}

    @pytest.mark.parametrize("config", [
        {"schedule": "not a cron"},
        {"schedule": "* * * * *", "timezone": "Mars/Olympus"},
    ])
    async def test_schedule_invalid_config(self, config):
        result = await handle_schedule_trigger(make_context(
            config=config, trigger={"type": "schedule", "payload": {}}))
        assert result.error.code == "INVALID_CONFIG"


# =============================================================================
# Email
# =============================================================================

class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def login(self, user, password):
        if FakeSMTP.fail_with:
            raise FakeSMTP.fail_with

    def send_message(self, message):
        FakeSMTP.sent.append(message)


class TestEmail:
    @pytest.fixture(autouse=True)
    def smtp(self):
        FakeSMTP.sent = []
        FakeSMTP.fail_with = None
        configure_smtp("smtp.test", 2525, "user", "pass", "noreply@example.com")
        set_smtp_factory(FakeSMTP)
        yield
        configure_smtp(None, 587, None, None, None)

    async def test_sends_message(self):
        result = await handle_email_send(make_context(config={
            "to": "a@example.com, b@example.com", "subject": "Hi", "body": "Hello"}))

        assert result.success
        assert result.data["recipients"] == ["a@example.com", "b@example.com"]
        assert result.data["messageId"]
        message = FakeSMTP.sent[0]
        assert message["From"] == "noreply@example.com"
        assert message["Subject"] == "Hi"

    async def test_missing_fields(self):
        result = await handle_email_send(make_context(config={"subject": "Hi", "body": "x"}))
        assert result.error.code == "MISSING_CONFIG"

    async def test_smtp_not_configured(self):
        configure_smtp(None, 587, None, None, None)
        result = await handle_email_send(make_context(config={
            "to": "a@example.com", "subject": "Hi", "body": "Hello"}))
        assert result.error.code == "MISSING_CONFIG"

    async def test_transient_reply_is_retryable(self):
        FakeSMTP.fail_with = smtplib.SMTPResponseException(421, b"try later")
        result = await handle_email_send(make_context(config={
            "to": "a@example.com", "subject": "Hi", "body": "Hello"}))
        assert result.error.code == "OPERATION_FAILED"
        assert result.error.retryable is True

    async def test_auth_failure_is_not_retryable(self):
        FakeSMTP.fail_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        result = await handle_email_send(make_context(config={
            "to": "a@example.com", "subject": "Hi", "body": "Hello"}))
        assert result.error.retryable is False

    async def test_disconnect_is_connection_failure(self):
        FakeSMTP.fail_with = smtplib.SMTPServerDisconnected("gone")
        result = await handle_email_send(make_context(config={
            "to": "a@example.com", "subject": "Hi", "body": "Hello"}))
        assert result.error.code == "CONNECTION_FAILED"
        assert result.error.retryable is True
