"""Outbound webhook payloads, signing and the default HTTP client.

Signatures follow the contract shared by every outbound webhook in the
system: HMAC-SHA256 of the exact request body keyed by the shared secret,
sent as ``X-OEO-Signature: sha256=<hex>``.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping

import httpx

from errors import TransientError
from models import ContactSnapshot, Enrollment, WebhookStep

logger = logging.getLogger(__name__)

WEBHOOK_EVENT = "automation.step"
SIGNATURE_HEADER = "X-OEO-Signature"
EVENT_HEADER = "X-OEO-Event"
TIMESTAMP_HEADER = "X-OEO-Timestamp"


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, header_value: str) -> bool:
    expected = f"sha256={sign_payload(body, secret)}"
    return hmac.compare_digest(expected, header_value)


def build_payload(
    enrollment: Enrollment, step: WebhookStep, contact: ContactSnapshot, timestamp: datetime
) -> Dict[str, Any]:
    return {
        "event": WEBHOOK_EVENT,
        "timestamp": timestamp.isoformat(),
        "data": {
            "enrollment_id": enrollment.id,
            "automation_id": enrollment.automation_id,
            "contact_id": enrollment.contact_id,
            "step_id": step.id,
            "contact": {
                "email": contact.email,
                "tags": list(contact.tags),
                "fields": dict(contact.fields),
            },
        },
    }


def encode_request(
    payload: Dict[str, Any], secret: str, extra_headers: Mapping[str, str] | None = None
) -> tuple[bytes, Dict[str, str]]:
    """Serialise once and sign the exact bytes that go on the wire."""
    body = json.dumps(payload, separators=(",", ":"), default=str).encode()
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"sha256={sign_payload(body, secret)}",
        EVENT_HEADER: payload["event"],
        TIMESTAMP_HEADER: payload["timestamp"],
    }
    headers.update(extra_headers or {})
    return body, headers


class HttpxWebhookClient:
    """Default WebhookClient backed by a shared httpx.Client."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(follow_redirects=False)

    def post(
        self,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        timeout: float,
        method: str = "POST",
    ) -> int:
        try:
            response = self._client.request(method, url, content=body, headers=dict(headers), timeout=timeout)
        except httpx.TimeoutException as exc:
            raise TransientError(f"Webhook timed out after {timeout}s: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Webhook request failed: {exc}") from exc
        logger.debug("Webhook %s %s -> %d", method, url, response.status_code)
        return response.status_code

    def close(self) -> None:
        self._client.close()
