"""Tests for webhook signing and the httpx client."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from engine import HttpxWebhookClient, build_payload, encode_request, sign_payload, verify_signature
from errors import TransientError
from models import ContactSnapshot, Enrollment, WebhookConfig, WebhookStep

SECRET = "s3cret"
SENT_AT = datetime(2026, 5, 4, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def payload():
    enrollment = Enrollment(id="enr-1", automation_id="auto-1", contact_id="c1")
    step = WebhookStep(id="s-hook", automation_id="auto-1", config=WebhookConfig(url="https://example.com/in"))
    contact = ContactSnapshot(id="c1", email="ada@example.com", tags=["vip"], fields={"company": "ACME"})
    return build_payload(enrollment, step, contact, SENT_AT)


class TestSigning:
    """Tests for HMAC signing."""

    def test_known_digest(self):
        digest = sign_payload(b"The quick brown fox jumps over the lazy dog", "key")

        assert digest == "f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8"

    def test_verify(self):
        body = b'{"event":"automation.step"}'
        header = f"sha256={sign_payload(body, SECRET)}"

        assert verify_signature(body, SECRET, header)
        assert not verify_signature(body, "other", header)
        assert not verify_signature(body + b" ", SECRET, header)
        assert not verify_signature(body, SECRET, sign_payload(body, SECRET))


class TestPayload:
    """Tests for payload shape and request encoding."""

    def test_payload_shape(self, payload):
        assert payload["event"] == "automation.step"
        assert payload["timestamp"] == "2026-05-04T12:30:00+00:00"
        assert payload["data"] == {
            "enrollment_id": "enr-1",
            "automation_id": "auto-1",
            "contact_id": "c1",
            "step_id": "s-hook",
            "contact": {"email": "ada@example.com", "tags": ["vip"], "fields": {"company": "ACME"}},
        }

    def test_encode_request_signs_exact_body(self, payload):
        body, headers = encode_request(payload, SECRET, {"X-Source": "automations"})

        assert json.loads(body) == payload
        assert headers["Content-Type"] == "application/json"
        assert headers["X-OEO-Event"] == "automation.step"
        assert headers["X-OEO-Timestamp"] == payload["timestamp"]
        assert headers["X-OEO-Signature"].startswith("sha256=")
        assert verify_signature(body, SECRET, headers["X-OEO-Signature"])
        assert headers["X-Source"] == "automations"


class TestHttpxWebhookClient:
    """Tests for HttpxWebhookClient over a mock transport."""

    def test_returns_status_code(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202)

        client = HttpxWebhookClient(httpx.Client(transport=httpx.MockTransport(handler)))

        status = client.post("https://example.com/in", b'{"a":1}', {"X-Test": "1"}, timeout=2, method="PUT")

        assert status == 202
        assert seen[0].method == "PUT"
        assert seen[0].content == b'{"a":1}'
        assert seen[0].headers["X-Test"] == "1"
        client.close()

    def test_error_status_is_returned_not_raised(self):
        client = HttpxWebhookClient(httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))))

        assert client.post("https://example.com/in", b"{}", {}, timeout=2) == 500

    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectTimeout("slow"), httpx.ConnectError("refused"), httpx.ReadTimeout("stalled")],
    )
    def test_transport_failures_are_transient(self, error):
        def handler(request):
            raise error

        client = HttpxWebhookClient(httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(TransientError):
            client.post("https://example.com/in", b"{}", {}, timeout=2)
