from __future__ import annotations

import binascii
import json
from dataclasses import dataclass
from typing import Any, Mapping

from svix.webhooks import Webhook
from svix.webhooks import WebhookVerificationError as SvixVerificationError

from eventdesk.models import IdentityProfile


SYNC_EVENT_TYPES = {"user.created", "user.updated"}


class WebhookVerificationError(Exception):
    pass


@dataclass
class WebhookEvent:
    event_type: str
    data: dict[str, Any]

    @property
    def requires_sync(self) -> bool:
        return self.event_type in SYNC_EVENT_TYPES

    def profile(self) -> IdentityProfile:
        return IdentityProfile.from_api(self.data)


def verify_webhook(secret: str, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
    """Verify the Svix signature headers and decode the event payload."""
    if not secret.strip():
        raise WebhookVerificationError("Webhook secret is not configured.")
    try:
        webhook = Webhook(secret.strip())
    except (binascii.Error, ValueError) as exc:
        raise WebhookVerificationError("Webhook secret is not valid base64.") from exc

    try:
        payload = webhook.verify(body, dict(headers.items()))
    except SvixVerificationError as exc:
        raise WebhookVerificationError(str(exc) or "Verification failed") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookVerificationError("Webhook body is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise WebhookVerificationError("Webhook body root must be an object")
    data = payload.get("data")
    return WebhookEvent(
        event_type=str(payload.get("type", "") or ""),
        data=dict(data) if isinstance(data, dict) else {},
    )
