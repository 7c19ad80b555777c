"""Webhook dispatcher — POST a versioned JSON envelope to an endpoint.

Learn: Wire format (version 1):

    {
      "version": 1,
      "msgID": "<uuid>",
      "notificationType": "Workspace Deleted",
      "title": "...",
      "recipient": "...",
      "labels": {"a": "b", ...}
    }

When a secret is configured the raw body is signed with HMAC-SHA256 and
sent as X-Herald-Signature: sha256=<hex>, the same scheme GitHub uses,
so receivers can reuse their verification code.

Non-2xx responses and transport errors are retryable. A missing or
malformed endpoint is a configuration problem and fails permanently.
"""

import hashlib
import hmac
import json
import uuid
from typing import Optional

import httpx
import structlog

from herald import __version__
from herald.config import WebhookConfig
from herald.notifications.dispatch.base import Dispatcher
from herald.notifications.exceptions import DispatchError
from herald.notifications.types import NotificationMethod, Payload

logger = structlog.get_logger()

PAYLOAD_VERSION = 1
SIGNATURE_HEADER = "X-Herald-Signature"


def build_payload(message_id: uuid.UUID, payload: Payload) -> dict:
    return {
        "version": PAYLOAD_VERSION,
        "msgID": str(message_id),
        "notificationType": payload.notification_name,
        "title": payload.title,
        "recipient": payload.recipient,
        "labels": dict(payload.labels),
    }


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Receiver-side check, constant time."""
    return hmac.compare_digest(sign(secret, body), signature)


class WebhookDispatcher(Dispatcher):
    """Delivers notifications as JSON POSTs using httpx."""

    def __init__(
        self,
        config: WebhookConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        name: Optional[str] = None,
    ):
        self.config = config
        self._transport = transport
        self._name = name or NotificationMethod.WEBHOOK.value

    @property
    def name(self) -> str:
        return self._name

    def _endpoint(self) -> httpx.URL:
        if not self.config.endpoint:
            raise DispatchError("webhook endpoint is not configured", retryable=False)
        try:
            url = httpx.URL(self.config.endpoint)
        except httpx.InvalidURL as e:
            raise DispatchError(f"invalid webhook endpoint: {e}", retryable=False) from e
        if url.scheme not in ("http", "https") or not url.host:
            raise DispatchError(
                f"invalid webhook endpoint '{self.config.endpoint}'", retryable=False
            )
        return url

    async def send(self, message_id: uuid.UUID, payload: Payload) -> None:
        url = self._endpoint()
        body = json.dumps(build_payload(message_id, payload)).encode()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"herald/{__version__}",
        }
        if self.config.secret:
            headers[SIGNATURE_HEADER] = sign(self.config.secret, body)

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.config.timeout
            ) as client:
                resp = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DispatchError(f"webhook request failed: {e}", retryable=True) from e

        if not resp.is_success:
            raise DispatchError(
                f"webhook returned {resp.status_code}: {resp.text[:200]}",
                retryable=True,
            )

        logger.info("webhook.sent", msg_id=str(message_id), status=resp.status_code)
