"""Classification of verified payment-provider webhook bodies.

A body becomes exactly one of three variants:

* ``GrantCandidateEvent``: order/subscription events whose status may grant
  (or, for a non-granting status such as ``past_due``, downgrade) access.
* ``RevocationEvent``: explicit cancellation, expiry or refund.
* ``IgnoredEvent``: any other event name, and anything malformed.

Callers match on the variant once instead of re-checking event names.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Union

from pydantic import BaseModel

from .identity import normalize_email, safe_text
from .models import is_grant_status, normalize_status

GRANT_CANDIDATE_EVENTS: frozenset[str] = frozenset(
    {
        "order_created",
        "subscription_created",
        "subscription_updated",
        "subscription_payment_success",
        "subscription_resumed",
        "subscription_unpaused",
    }
)
REVOCATION_EVENTS: dict[str, str] = {
    "subscription_cancelled": "cancelled",
    "subscription_expired": "expired",
    "order_refunded": "refunded",
}


class PaymentEvent(BaseModel):
    event_type: str
    resource_id: str
    status: str
    email: str = ""
    user_id: str | None = None
    renews_at: str | None = None


class GrantCandidateEvent(PaymentEvent):
    kind: Literal["grant_candidate"] = "grant_candidate"


class RevocationEvent(PaymentEvent):
    kind: Literal["revocation"] = "revocation"


class IgnoredEvent(BaseModel):
    kind: Literal["ignored"] = "ignored"
    event_type: str = ""
    reason: str


WebhookEvent = Union[GrantCandidateEvent, RevocationEvent, IgnoredEvent]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return safe_text(str(value))


def parse_webhook_event(raw_body: bytes) -> WebhookEvent:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return IgnoredEvent(reason="body is not valid JSON")
    if not isinstance(payload, dict):
        return IgnoredEvent(reason="body is not a JSON object")

    meta = _as_dict(payload.get("meta"))
    data = _as_dict(payload.get("data"))
    attributes = _as_dict(data.get("attributes"))
    custom_data = _as_dict(meta.get("custom_data"))

    event_type = _text(meta.get("event_name")).lower()
    if not event_type:
        return IgnoredEvent(reason="missing meta.event_name")
    if event_type not in GRANT_CANDIDATE_EVENTS and event_type not in REVOCATION_EVENTS:
        return IgnoredEvent(event_type=event_type, reason="event type is not entitlement-relevant")

    resource_id = _text(data.get("id"))
    if not resource_id:
        return IgnoredEvent(event_type=event_type, reason="missing data.id")

    status = normalize_status(_text(attributes.get("status")))
    fields: dict[str, Any] = {
        "event_type": event_type,
        "resource_id": resource_id,
        "email": normalize_email(_text(attributes.get("user_email")) or _text(custom_data.get("email"))),
        "user_id": _text(custom_data.get("user_id")) or None,
        "renews_at": _text(attributes.get("renews_at")) or _text(attributes.get("ends_at")) or None,
    }

    if event_type in REVOCATION_EVENTS:
        # Refunded orders keep "paid" in some payload versions; the event name wins.
        if not status or is_grant_status(status):
            status = REVOCATION_EVENTS[event_type]
        return RevocationEvent(status=status, **fields)

    if not status:
        return IgnoredEvent(event_type=event_type, reason="missing data.attributes.status")
    return GrantCandidateEvent(status=status, **fields)
